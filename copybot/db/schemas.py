from typing import Optional
from datetime import datetime
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field

# All datetimes are stored timezone-aware, in UTC.


def _timestamp(index: bool = False):
    return Field(sa_column=Column(DateTime(timezone=True), index=index, nullable=False))


class SourceRow(SQLModel, table=True):
    __tablename__: str = "tracked_sources"

    address: str = Field(primary_key=True)
    label: str = Field(default="Unknown")
    active: bool = Field(default=True)
    added_at: datetime = _timestamp()
    config_json: str  # SourceConfig as JSON; evolves without migrations


class ExecutedPositionRow(SQLModel, table=True):
    __tablename__: str = "executed_positions"

    id: Optional[int] = Field(default=None, primary_key=True)
    market_id: str = Field(index=True)
    outcome: str
    timestamp: datetime = _timestamp(index=True)
    source_address: str = Field(index=True)


class RateLimitRow(SQLModel, table=True):
    __tablename__: str = "rate_limits"

    address: str = Field(primary_key=True)
    trades_this_hour: int = Field(default=0)
    trades_this_day: int = Field(default=0)
    hour_start: datetime = _timestamp()
    day_start: datetime = _timestamp()


class ProcessedKeyRow(SQLModel, table=True):
    __tablename__: str = "processed_keys"

    key: str = Field(primary_key=True)
    seen_at: datetime = _timestamp(index=True)


class ExecutionHistoryRow(SQLModel, table=True):
    __tablename__: str = "execution_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    success: bool
    order_id: Optional[str] = Field(default=None, index=True)
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, index=True)
    source_address: Optional[str] = Field(default=None, index=True)
    token_id: Optional[str] = None
    side: Optional[str] = None  # Storing as string to avoid Enum db issues
    size: Optional[float] = None
    price: Optional[float] = None
    timestamp: datetime = _timestamp(index=True)
    execution_time_ms: Optional[float] = None


class MirrorHistoryRow(SQLModel, table=True):
    __tablename__: str = "mirror_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    tracked_address: Optional[str] = Field(default=None, index=True)
    success: bool
    executed_trades: int
    failed_trades: int
    timestamp: datetime = _timestamp(index=True)
    payload_json: str  # full MirrorExecutionResult
