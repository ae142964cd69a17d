from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

class SizingMode(str, Enum):
    FIXED = "fixed"
    PROPORTIONAL = "proportional"

class SideFilter(str, Enum):
    ALL = "all"
    BUY_ONLY = "buy_only"
    SELL_ONLY = "sell_only"

class FeedChannel(str, Enum):
    PUSH = "push"
    POLL = "poll"

class MarketStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    RESOLVED = "resolved"

class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    REJECTION = "rejection"
    VENUE_FATAL = "venue_fatal"
    AMBIGUOUS = "ambiguous"
    ERROR = "error"

class OutcomeStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"
    NOOP = "noop"
    DUPLICATE = "duplicate"

class RejectReason(str, Enum):
    SOURCE_DISABLED = "source_disabled"
    SOURCE_INACTIVE = "source_inactive"
    SIDE_FILTER_BLOCKED = "side_filter_blocked"
    NO_REPEAT_WINDOW_ACTIVE = "no_repeat_window_active"
    PRICE_BELOW_MIN = "price_below_min"
    PRICE_ABOVE_MAX = "price_above_max"
    TRADE_VALUE_BELOW_MIN = "trade_value_below_min"
    TRADE_VALUE_ABOVE_MAX = "trade_value_above_max"
    RATE_LIMIT_EXCEEDED_HOURLY = "rate_limit_exceeded_hourly"
    RATE_LIMIT_EXCEEDED_DAILY = "rate_limit_exceeded_daily"
    BELOW_SOURCE_THRESHOLD = "below_source_threshold"
    SOURCE_PORTFOLIO_UNAVAILABLE = "source_portfolio_unavailable"
    BELOW_MIN_ORDER_SIZE = "below_min_order_size"
    ALLOCATION_ALREADY_MATCHED = "allocation_already_matched"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_POSITION = "insufficient_position"
    INVALID_PRICE = "invalid_price"
    INVALID_SIZE = "invalid_size"
    MARKET_CLOSED = "market_closed"

class MirrorAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    SKIP = "SKIP"

class MirrorStatus(str, Enum):
    READY = "ready"
    WARNING = "warning"
    SKIPPED = "skipped"


class SourceConfig(BaseModel):
    """Per-source replication rules. Copied onto every TradeEvent at detection time."""
    model_config = ConfigDict(frozen=True)

    sizing_mode: SizingMode = SizingMode.FIXED
    fixed_trade_size: float = Field(default=5.0, gt=0)  # $5 buys at least the 5-share venue minimum at any price
    threshold_enabled: bool = False
    threshold_percent: float = Field(default=10.0, ge=0)
    trade_side_filter: SideFilter = SideFilter.ALL
    no_repeat_enabled: bool = False
    block_period_hours: float = Field(default=24.0, ge=0)  # 0 = forever
    price_limits_min: float = Field(default=0.01, ge=0, le=1)
    price_limits_max: float = Field(default=0.99, ge=0, le=1)
    rate_limit_enabled: bool = False
    max_trades_per_hour: int = Field(default=10, ge=0)
    max_trades_per_day: int = Field(default=50, ge=0)
    value_filter_enabled: bool = False
    min_trade_value_usd: Optional[float] = None
    max_trade_value_usd: Optional[float] = None
    slippage_percent: float = Field(default=2.0, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.price_limits_min > self.price_limits_max:
            raise ValueError(f"price_limits_min {self.price_limits_min} exceeds price_limits_max {self.price_limits_max}")
        lo, hi = self.min_trade_value_usd, self.max_trade_value_usd
        if lo is not None and hi is not None and lo > hi:
            raise ValueError(f"min_trade_value_usd {lo} exceeds max_trade_value_usd {hi}")
        return self

class TrackedSource(BaseModel):
    address: str
    label: str = Field(default="Unknown")
    active: bool = True
    added_at: datetime = Field(default_factory=utc_now)
    config: SourceConfig = Field(default_factory=SourceConfig)

    @field_validator("address")
    @classmethod
    def _lower_address(cls, v: str) -> str:
        return v.strip().lower()

class Position(BaseModel):
    token_id: str
    market_id: str = ""
    outcome: str = ""
    size: float
    average_entry_price: float = 0.0
    current_price: float = 0.0
    redeemable: bool = False
    title: Optional[str] = None
    neg_risk: bool = False

    @property
    def value(self) -> float:
        return self.size * self.current_price

class MarketInfo(BaseModel):
    token_id: str
    tick_size: float = 0.01
    min_order_size: float = 5.0
    neg_risk: bool = False
    status: MarketStatus = MarketStatus.OPEN

    @property
    def is_tradable(self) -> bool:
        return self.status == MarketStatus.OPEN

class SizedOrder(BaseModel):
    token_id: str
    side: Side
    size: float
    limit_price: float
    neg_risk: bool = False
    tick_size: Optional[float] = None
    market_name: Optional[str] = None

class ExecutionResult(BaseModel):
    success: bool
    order_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    idempotency_key: Optional[str] = None
    source_address: Optional[str] = None
    token_id: Optional[str] = None
    side: Optional[Side] = None
    size: Optional[float] = None
    price: Optional[float] = None
    timestamp: datetime = Field(default_factory=utc_now)
    execution_time_ms: Optional[float] = None

class ExecutedPositionRecord(BaseModel):
    market_id: str
    outcome: str
    timestamp: datetime
    source_address: str

class RateLimitWindow(BaseModel):
    trades_this_hour: int = 0
    trades_this_day: int = 0
    hour_start: datetime = Field(default_factory=utc_now)
    day_start: datetime = Field(default_factory=utc_now)

class FilterDecision(BaseModel):
    blocked: bool
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None

class SizingDecision(BaseModel):
    side: Side
    size: float = 0.0
    noop: bool = False
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.reason is not None and not self.noop

class PipelineOutcome(BaseModel):
    idempotency_key: str
    source_address: str
    status: OutcomeStatus
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None
    result: Optional[ExecutionResult] = None
    timestamp: datetime = Field(default_factory=utc_now)


class MirrorTrade(BaseModel):
    market_id: str
    market_title: str
    token_id: str
    outcome: str

    their_shares: float = 0.0
    their_avg_price: float = 0.0
    their_allocation_percent: float = 0.0

    your_shares: float = 0.0
    your_allocation_percent: float = 0.0

    action: MirrorAction
    shares_to_trade: float = 0.0
    estimated_cost: float = 0.0  # positive for BUY, negative (proceeds) for SELL
    current_price: float = 0.0

    status: MirrorStatus = MirrorStatus.READY
    warning: Optional[str] = None
    price_deviation_percent: Optional[float] = None

    selected: bool = False
    neg_risk: bool = False

class MirrorSummary(BaseModel):
    total_buy_trades: int = 0
    total_sell_trades: int = 0
    total_skipped: int = 0
    total_warnings: int = 0
    estimated_buy_cost: float = 0.0
    estimated_sell_proceeds: float = 0.0

class MirrorPreview(BaseModel):
    tracked_address: str
    tracked_label: Optional[str] = None
    your_portfolio_value: float
    their_portfolio_value: float
    trades: list[MirrorTrade]
    summary: MirrorSummary
    slippage_tolerance: float

class MirrorLegResult(BaseModel):
    market_title: str
    token_id: str
    action: MirrorAction
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None

class MirrorExecutionSummary(BaseModel):
    sells_attempted: int = 0
    sells_succeeded: int = 0
    buys_attempted: int = 0
    buys_succeeded: int = 0
    balance_before_sells: float = 0.0
    balance_after_sells: float = 0.0

class MirrorExecutionResult(BaseModel):
    success: bool
    executed_trades: int
    failed_trades: int
    results: list[MirrorLegResult]
    summary: MirrorExecutionSummary
    tracked_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class SystemIssue(BaseModel):
    severity: str  # "warning" | "error"
    category: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)

class PerformanceStats(BaseModel):
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    success_rate: float = 0.0  # percent
    average_execution_time_ms: float = 0.0
    trades_last_hour: int = 0
    trades_last_24h: int = 0
    uptime_seconds: float = 0.0
    last_trade_time: Optional[datetime] = None
    issues: list[SystemIssue] = Field(default_factory=list)
