import logging
from datetime import datetime

from copybot.core.events import TradeEvent
from copybot.core.models import FilterDecision, RejectReason, Side, SideFilter
from copybot.services.no_repeat import NoRepeatLedger
from copybot.services.rate_limiter import SourceRateLimiter

logger = logging.getLogger(__name__)

PASS = FilterDecision(blocked=False)


class FilterChain:
    """
    Ordered, short-circuiting predicates evaluated against the config snapshot
    carried by the event.

    Order: side filter, no-repeat, price bounds, value bounds, rate limit.
    The rate limit runs last: it is the only stage that consumes state.
    """

    def __init__(self, ledger: NoRepeatLedger, rate_limiter: SourceRateLimiter):
        self.ledger = ledger
        self.rate_limiter = rate_limiter

    async def evaluate(self, event: TradeEvent, now: datetime) -> FilterDecision:
        for stage in (self._side_filter, self._no_repeat, self._price_bounds, self._value_bounds):
            decision = stage(event, now)
            if decision.blocked:
                logger.info(f"  🛑 Blocked [{decision.reason.value}] {decision.detail or ''}")
                return decision
        decision = await self._rate_limit(event, now)
        if decision.blocked:
            logger.info(f"  🛑 Blocked [{decision.reason.value}]")
        return decision

    def _side_filter(self, event: TradeEvent, now: datetime) -> FilterDecision:
        side_filter = event.config.trade_side_filter
        if side_filter == SideFilter.BUY_ONLY and event.side == Side.SELL:
            return FilterDecision(blocked=True, reason=RejectReason.SIDE_FILTER_BLOCKED, detail="source is buy_only")
        if side_filter == SideFilter.SELL_ONLY and event.side == Side.BUY:
            return FilterDecision(blocked=True, reason=RejectReason.SIDE_FILTER_BLOCKED, detail="source is sell_only")
        return PASS

    def _no_repeat(self, event: TradeEvent, now: datetime) -> FilterDecision:
        cfg = event.config
        if not cfg.no_repeat_enabled:
            return PASS
        if self.ledger.is_blocked(event.market_id, event.outcome, cfg.block_period_hours, now):
            period = "forever" if cfg.block_period_hours == 0 else f"{cfg.block_period_hours}h"
            return FilterDecision(
                blocked=True,
                reason=RejectReason.NO_REPEAT_WINDOW_ACTIVE,
                detail=f"{event.market_id}/{event.outcome} copied within {period}",
            )
        return PASS

    def _price_bounds(self, event: TradeEvent, now: datetime) -> FilterDecision:
        cfg = event.config
        if event.price < cfg.price_limits_min:
            return FilterDecision(blocked=True, reason=RejectReason.PRICE_BELOW_MIN, detail=f"{event.price:.3f} < {cfg.price_limits_min:.3f}")
        if event.price > cfg.price_limits_max:
            return FilterDecision(blocked=True, reason=RejectReason.PRICE_ABOVE_MAX, detail=f"{event.price:.3f} > {cfg.price_limits_max:.3f}")
        return PASS

    def _value_bounds(self, event: TradeEvent, now: datetime) -> FilterDecision:
        cfg = event.config
        if not cfg.value_filter_enabled:
            return PASS
        value = event.notional
        if cfg.min_trade_value_usd is not None and value < cfg.min_trade_value_usd:
            return FilterDecision(blocked=True, reason=RejectReason.TRADE_VALUE_BELOW_MIN, detail=f"${value:.2f} < ${cfg.min_trade_value_usd:.2f}")
        if cfg.max_trade_value_usd is not None and value > cfg.max_trade_value_usd:
            return FilterDecision(blocked=True, reason=RejectReason.TRADE_VALUE_ABOVE_MAX, detail=f"${value:.2f} > ${cfg.max_trade_value_usd:.2f}")
        return PASS

    async def _rate_limit(self, event: TradeEvent, now: datetime) -> FilterDecision:
        if not event.config.rate_limit_enabled:
            return PASS
        reason = await self.rate_limiter.try_acquire(event.source_address, event.config, now)
        if reason is not None:
            return FilterDecision(blocked=True, reason=reason)
        return PASS
