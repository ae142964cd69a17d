import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from copybot.core.interfaces import StorageProvider
from copybot.core.models import (
    ErrorKind, ExecutedPositionRecord, ExecutionResult, MirrorExecutionResult,
    RateLimitWindow, Side, SourceConfig, TrackedSource,
)
from copybot.db.database import init_db, make_session_maker
from copybot.db.schemas import (
    ExecutedPositionRow, ExecutionHistoryRow, MirrorHistoryRow, ProcessedKeyRow,
    RateLimitRow, SourceRow,
)

logger = logging.getLogger(__name__)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values even for timezone-aware columns
    if dt is None:
        return dt
    return _utc(dt)


class SqlStorage(StorageProvider):
    """StorageProvider on SQLModel tables through an async SQLAlchemy engine."""

    def __init__(self, bind: AsyncEngine):
        self.engine = bind
        self._session = make_session_maker(bind)

    async def init(self):
        await init_db(self.engine)
        logger.info("💾 Database tables ready")

    # --- sources ---------------------------------------------------------

    async def load_sources(self) -> List[TrackedSource]:
        async with self._session() as session:
            rows = (await session.execute(select(SourceRow))).scalars().all()
        return [
            TrackedSource(
                address=r.address,
                label=r.label,
                active=r.active,
                added_at=_aware(r.added_at),
                config=SourceConfig.model_validate_json(r.config_json),
            )
            for r in rows
        ]

    async def save_source(self, source: TrackedSource) -> None:
        async with self._session() as session:
            row = await session.get(SourceRow, source.address)
            if row is None:
                row = SourceRow(address=source.address, added_at=_utc(source.added_at), config_json="{}")
            row.label = source.label
            row.active = source.active
            row.config_json = source.config.model_dump_json()
            session.add(row)
            await session.commit()

    # --- no-repeat ledger ------------------------------------------------

    async def load_executed_positions(self) -> List[ExecutedPositionRecord]:
        async with self._session() as session:
            rows = (await session.execute(select(ExecutedPositionRow).order_by(ExecutedPositionRow.timestamp))).scalars().all()
        return [
            ExecutedPositionRecord(
                market_id=r.market_id, outcome=r.outcome,
                timestamp=_aware(r.timestamp), source_address=r.source_address,
            )
            for r in rows
        ]

    async def append_executed_position(self, record: ExecutedPositionRecord) -> None:
        async with self._session() as session:
            session.add(ExecutedPositionRow(
                market_id=record.market_id, outcome=record.outcome,
                timestamp=_utc(record.timestamp), source_address=record.source_address,
            ))
            await session.commit()

    async def replace_executed_positions(self, records: List[ExecutedPositionRecord]) -> None:
        async with self._session() as session:
            await session.execute(delete(ExecutedPositionRow))
            for r in records:
                session.add(ExecutedPositionRow(
                    market_id=r.market_id, outcome=r.outcome,
                    timestamp=_utc(r.timestamp), source_address=r.source_address,
                ))
            await session.commit()

    # --- rate limits -----------------------------------------------------

    async def load_rate_limits(self) -> Dict[str, RateLimitWindow]:
        async with self._session() as session:
            rows = (await session.execute(select(RateLimitRow))).scalars().all()
        return {
            r.address: RateLimitWindow(
                trades_this_hour=r.trades_this_hour, trades_this_day=r.trades_this_day,
                hour_start=_aware(r.hour_start), day_start=_aware(r.day_start),
            )
            for r in rows
        }

    async def save_rate_limits(self, windows: Dict[str, RateLimitWindow]) -> None:
        async with self._session() as session:
            await session.execute(delete(RateLimitRow))
            for address, w in windows.items():
                session.add(RateLimitRow(
                    address=address,
                    trades_this_hour=w.trades_this_hour, trades_this_day=w.trades_this_day,
                    hour_start=_utc(w.hour_start), day_start=_utc(w.day_start),
                ))
            await session.commit()

    # --- idempotency keys ------------------------------------------------

    async def load_processed_keys(self, since: datetime) -> Dict[str, datetime]:
        async with self._session() as session:
            stmt = select(ProcessedKeyRow).where(ProcessedKeyRow.seen_at >= _utc(since))
            rows = (await session.execute(stmt)).scalars().all()
        return {r.key: _aware(r.seen_at) for r in rows}

    async def add_processed_key(self, key: str, seen_at: datetime) -> None:
        async with self._session() as session:
            if await session.get(ProcessedKeyRow, key) is None:
                session.add(ProcessedKeyRow(key=key, seen_at=_utc(seen_at)))
                await session.commit()

    async def prune_processed_keys(self, before: datetime) -> None:
        async with self._session() as session:
            await session.execute(delete(ProcessedKeyRow).where(ProcessedKeyRow.seen_at < _utc(before)))
            await session.commit()

    # --- history ---------------------------------------------------------

    async def append_execution_result(self, result: ExecutionResult) -> None:
        async with self._session() as session:
            session.add(ExecutionHistoryRow(
                success=result.success,
                order_id=result.order_id,
                tx_hash=result.tx_hash,
                error=result.error,
                error_kind=result.error_kind.value if result.error_kind else None,
                idempotency_key=result.idempotency_key,
                source_address=result.source_address,
                token_id=result.token_id,
                side=result.side.value if result.side else None,
                size=result.size,
                price=result.price,
                timestamp=_utc(result.timestamp),
                execution_time_ms=result.execution_time_ms,
            ))
            await session.commit()

    async def load_execution_history(self, limit: int = 100) -> List[ExecutionResult]:
        async with self._session() as session:
            stmt = select(ExecutionHistoryRow).order_by(ExecutionHistoryRow.id.desc()).limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
        return [
            ExecutionResult(
                success=r.success,
                order_id=r.order_id,
                tx_hash=r.tx_hash,
                error=r.error,
                error_kind=ErrorKind(r.error_kind) if r.error_kind else None,
                idempotency_key=r.idempotency_key,
                source_address=r.source_address,
                token_id=r.token_id,
                side=Side(r.side) if r.side else None,
                size=r.size,
                price=r.price,
                timestamp=_aware(r.timestamp),
                execution_time_ms=r.execution_time_ms,
            )
            for r in rows
        ]

    async def append_mirror_execution(self, result: MirrorExecutionResult) -> None:
        async with self._session() as session:
            session.add(MirrorHistoryRow(
                tracked_address=result.tracked_address,
                success=result.success,
                executed_trades=result.executed_trades,
                failed_trades=result.failed_trades,
                timestamp=_utc(result.timestamp),
                payload_json=result.model_dump_json(),
            ))
            await session.commit()

    async def load_mirror_history(self, limit: int = 20) -> List[MirrorExecutionResult]:
        async with self._session() as session:
            stmt = select(MirrorHistoryRow).order_by(MirrorHistoryRow.id.desc()).limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
        return [MirrorExecutionResult.model_validate_json(r.payload_json) for r in rows]
