"""
Performance Tracker

Keeps execution metrics and a rolling log of problems an operator should
look at.

Features:
- Success rate and average submission latency over the last N orders
- Trade counts for the last hour and the last 24 hours
- Issue log fed by failed submissions, disabled sources and persistence errors
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, List, Optional

from copybot.core.models import ErrorKind, ExecutionResult, PerformanceStats, SystemIssue, utc_now

MAX_RESULTS = 1000
MAX_ISSUES = 500
STATS_ISSUES = 20

# Kinds that need a human; the rest are expected venue pushback.
_SEVERE = {ErrorKind.AMBIGUOUS, ErrorKind.VENUE_FATAL, ErrorKind.ERROR}


class PerformanceTracker:

    def __init__(self, clock: Callable[[], datetime] = utc_now,
                 max_results: int = MAX_RESULTS, max_issues: int = MAX_ISSUES):
        self._clock = clock
        self.started_at = clock()
        self._results: Deque[ExecutionResult] = deque(maxlen=max_results)
        self._issues: Deque[SystemIssue] = deque(maxlen=max_issues)

    def record(self, result: ExecutionResult):
        """Records one submission outcome. Failures also land in the issue log."""
        self._results.append(result)
        if result.success:
            return
        severity = "error" if result.error_kind in _SEVERE else "warning"
        token = f"...{result.token_id[-8:]}" if result.token_id else "order"
        side = result.side.value if result.side else ""
        kind = result.error_kind.value if result.error_kind else "error"
        self.log_issue(severity, "execution", f"{side} {token} failed [{kind}]: {result.error}".strip())

    def log_issue(self, severity: str, category: str, message: str):
        self._issues.append(SystemIssue(severity=severity, category=category, message=message, timestamp=self._clock()))

    def issues(self, limit: int = STATS_ISSUES) -> List[SystemIssue]:
        """Newest first."""
        return list(self._issues)[-limit:][::-1]

    def stats(self, now: Optional[datetime] = None) -> PerformanceStats:
        now = now or self._clock()
        results = list(self._results)
        succeeded = sum(1 for r in results if r.success)
        timings = [r.execution_time_ms for r in results if r.execution_time_ms is not None]

        return PerformanceStats(
            total_trades=len(results),
            successful_trades=succeeded,
            failed_trades=len(results) - succeeded,
            success_rate=round(succeeded / len(results) * 100, 2) if results else 0.0,
            average_execution_time_ms=round(sum(timings) / len(timings), 1) if timings else 0.0,
            trades_last_hour=sum(1 for r in results if r.timestamp >= now - timedelta(hours=1)),
            trades_last_24h=sum(1 for r in results if r.timestamp >= now - timedelta(hours=24)),
            uptime_seconds=(now - self.started_at).total_seconds(),
            last_trade_time=results[-1].timestamp if results else None,
            issues=self.issues(),
        )
