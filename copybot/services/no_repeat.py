import logging
from datetime import datetime, timedelta
from typing import List, Optional

from copybot.core.models import ExecutedPositionRecord

logger = logging.getLogger(__name__)

# Records older than this are pruned unless a source blocks forever.
DEFAULT_RETENTION = timedelta(days=30)


class NoRepeatLedger:
    """Append-only record of successful copies, keyed by (market, outcome)."""

    def __init__(self, records: Optional[List[ExecutedPositionRecord]] = None):
        self._records: List[ExecutedPositionRecord] = list(records or [])

    def record(self, record: ExecutedPositionRecord):
        self._records.append(record)

    def last_execution(self, market_id: str, outcome: str) -> Optional[ExecutedPositionRecord]:
        latest = None
        for r in self._records:
            if r.market_id == market_id and r.outcome == outcome:
                if latest is None or r.timestamp > latest.timestamp:
                    latest = r
        return latest

    def is_blocked(self, market_id: str, outcome: str, block_period_hours: float, now: datetime) -> bool:
        """A block period of 0 means the market stays blocked until the ledger is cleared."""
        last = self.last_execution(market_id, outcome)
        if last is None:
            return False
        if block_period_hours == 0:
            return True
        return now - last.timestamp < timedelta(hours=block_period_hours)

    def prune(self, now: datetime, retention: timedelta = DEFAULT_RETENTION) -> int:
        cutoff = now - retention
        before = len(self._records)
        self._records = [r for r in self._records if r.timestamp >= cutoff]
        removed = before - len(self._records)
        if removed:
            logger.info(f"🧹 Pruned {removed} executed-position records older than {retention}")
        return removed

    def clear(self, market_id: Optional[str] = None):
        if market_id is None:
            self._records = []
        else:
            self._records = [r for r in self._records if r.market_id != market_id]

    def records(self) -> List[ExecutedPositionRecord]:
        return list(self._records)
