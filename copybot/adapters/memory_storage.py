from datetime import datetime
from typing import Dict, List

from copybot.core.interfaces import StorageProvider
from copybot.core.models import (
    ExecutedPositionRecord, ExecutionResult, MirrorExecutionResult, RateLimitWindow, TrackedSource,
)


class InMemoryStorage(StorageProvider):
    """Process-local storage for dry runs and tests. Nothing survives a restart."""

    def __init__(self):
        self.sources: Dict[str, TrackedSource] = {}
        self.executed_positions: List[ExecutedPositionRecord] = []
        self.rate_limits: Dict[str, RateLimitWindow] = {}
        self.processed_keys: Dict[str, datetime] = {}
        self.execution_history: List[ExecutionResult] = []
        self.mirror_history: List[MirrorExecutionResult] = []

    async def load_sources(self) -> List[TrackedSource]:
        return [s.model_copy(deep=True) for s in self.sources.values()]

    async def save_source(self, source: TrackedSource) -> None:
        self.sources[source.address] = source.model_copy(deep=True)

    async def load_executed_positions(self) -> List[ExecutedPositionRecord]:
        return list(self.executed_positions)

    async def append_executed_position(self, record: ExecutedPositionRecord) -> None:
        self.executed_positions.append(record)

    async def replace_executed_positions(self, records: List[ExecutedPositionRecord]) -> None:
        self.executed_positions = list(records)

    async def load_rate_limits(self) -> Dict[str, RateLimitWindow]:
        return {a: w.model_copy() for a, w in self.rate_limits.items()}

    async def save_rate_limits(self, windows: Dict[str, RateLimitWindow]) -> None:
        self.rate_limits = {a: w.model_copy() for a, w in windows.items()}

    async def load_processed_keys(self, since: datetime) -> Dict[str, datetime]:
        return {k: ts for k, ts in self.processed_keys.items() if ts >= since}

    async def add_processed_key(self, key: str, seen_at: datetime) -> None:
        self.processed_keys.setdefault(key, seen_at)

    async def prune_processed_keys(self, before: datetime) -> None:
        self.processed_keys = {k: ts for k, ts in self.processed_keys.items() if ts >= before}

    async def append_execution_result(self, result: ExecutionResult) -> None:
        self.execution_history.append(result)

    async def load_execution_history(self, limit: int = 100) -> List[ExecutionResult]:
        return list(reversed(self.execution_history))[:limit]

    async def append_mirror_execution(self, result: MirrorExecutionResult) -> None:
        self.mirror_history.append(result)

    async def load_mirror_history(self, limit: int = 20) -> List[MirrorExecutionResult]:
        return list(reversed(self.mirror_history))[:limit]
