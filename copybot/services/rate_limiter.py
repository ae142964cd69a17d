"""
Source Rate Limiter

Caps how many copies a single source can trigger per hour and per day.

Features:
- Fixed hourly and daily windows per source, reset when the clock crosses
  the window boundary
- Check and increment under one lock, so two events racing for the last
  slot cannot both pass
- Snapshot/restore hooks for the storage provider
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from copybot.core.models import RateLimitWindow, RejectReason, SourceConfig

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


class SourceRateLimiter:
    """Per-source trade counters with hourly and daily limits."""

    def __init__(self, windows: Optional[Dict[str, RateLimitWindow]] = None):
        self._windows: Dict[str, RateLimitWindow] = dict(windows or {})
        self._lock = asyncio.Lock()

    def _roll(self, address: str, now: datetime) -> RateLimitWindow:
        window = self._windows.get(address)
        if window is None:
            window = RateLimitWindow(hour_start=now, day_start=now)
            self._windows[address] = window
            return window
        if now - window.hour_start >= HOUR:
            window.trades_this_hour = 0
            window.hour_start = now
        if now - window.day_start >= DAY:
            window.trades_this_day = 0
            window.day_start = now
        return window

    async def try_acquire(self, address: str, config: SourceConfig, now: datetime) -> Optional[RejectReason]:
        """
        Consumes one slot for `address` if both windows allow it.

        Returns:
            None if the trade may proceed (counters already incremented),
            otherwise the rejection reason (counters untouched).
        """
        async with self._lock:
            window = self._roll(address, now)
            if window.trades_this_hour >= config.max_trades_per_hour:
                logger.info(f"  🚦 {address[:10]}... hourly limit reached ({window.trades_this_hour}/{config.max_trades_per_hour})")
                return RejectReason.RATE_LIMIT_EXCEEDED_HOURLY
            if window.trades_this_day >= config.max_trades_per_day:
                logger.info(f"  🚦 {address[:10]}... daily limit reached ({window.trades_this_day}/{config.max_trades_per_day})")
                return RejectReason.RATE_LIMIT_EXCEEDED_DAILY
            window.trades_this_hour += 1
            window.trades_this_day += 1
            return None

    def status(self, address: str, config: SourceConfig, now: datetime) -> dict:
        """Current usage for the status API. Does not consume a slot."""
        window = self._windows.get(address)
        if window is None:
            used_hour, used_day = 0, 0
            hour_reset, day_reset = None, None
        else:
            fresh_hour = now - window.hour_start >= HOUR
            fresh_day = now - window.day_start >= DAY
            used_hour = 0 if fresh_hour else window.trades_this_hour
            used_day = 0 if fresh_day else window.trades_this_day
            hour_reset = None if fresh_hour else window.hour_start + HOUR
            day_reset = None if fresh_day else window.day_start + DAY
        return {
            "enabled": config.rate_limit_enabled,
            "trades_this_hour": used_hour,
            "max_trades_per_hour": config.max_trades_per_hour,
            "trades_this_day": used_day,
            "max_trades_per_day": config.max_trades_per_day,
            "hour_resets_at": hour_reset,
            "day_resets_at": day_reset,
        }

    def snapshot(self) -> Dict[str, RateLimitWindow]:
        return {a: w.model_copy() for a, w in self._windows.items()}

    def restore(self, windows: Dict[str, RateLimitWindow]):
        self._windows = {a: w.model_copy() for a, w in windows.items()}
        logger.info(f"💾 Rate limiter restored windows for {len(self._windows)} sources")
