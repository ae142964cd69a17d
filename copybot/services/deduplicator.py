import logging
from datetime import datetime, timedelta
from typing import Dict

logger = logging.getLogger(__name__)


class Deduplicator:
    """
    Single authority for at-most-once processing of an idempotency key.

    Both feeds may report the same activity; the second report is the
    expected steady state and is dropped quietly. Keys age out after
    `horizon` so memory stays bounded.
    """

    def __init__(self, horizon: timedelta):
        self.horizon = horizon
        self._seen: Dict[str, datetime] = {}

    def check_and_mark(self, key: str, now: datetime) -> bool:
        """
        Returns True if `key` is new (and records it), False if it was already seen.

        Contains no await, so under asyncio the check and the mark are one step.
        """
        self._expire(now)
        if key in self._seen:
            logger.debug(f"Duplicate event dropped: {key}")
            return False
        self._seen[key] = now
        return True

    def seen(self, key: str) -> bool:
        return key in self._seen

    def _expire(self, now: datetime):
        cutoff = now - self.horizon
        stale = [k for k, ts in self._seen.items() if ts < cutoff]
        for k in stale:
            del self._seen[k]

    def snapshot(self) -> Dict[str, datetime]:
        return dict(self._seen)

    def restore(self, keys: Dict[str, datetime], now: datetime):
        self._seen = dict(keys)
        self._expire(now)
        logger.info(f"💾 Deduplicator restored {len(self._seen)} keys")

    def __len__(self) -> int:
        return len(self._seen)
