import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from copybot.core.errors import AuthError
from copybot.core.events import TradeEvent
from copybot.core.interfaces import ExchangeProvider
from copybot.core.models import MarketInfo, Position, RejectReason, Side, SizingDecision, SizingMode
from copybot.services.pricing import apply_slippage
from copybot.services.retry import DEFAULT_ATTEMPTS, retry_read

logger = logging.getLogger(__name__)


class SizeCalculator:
    """
    Turns an accepted event into a share count for the follower.

    Two strategies, chosen per source:
      fixed        - a constant USD notional per copy
      proportional - match the follower's allocation % in the market to the source's

    Balance and holding limits reject the order; the size is never clamped.
    """

    def __init__(
        self,
        exchange: ExchangeProvider,
        read_attempts: int = DEFAULT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.exchange = exchange
        self.read_attempts = read_attempts
        self._sleep = sleep

    async def _read(self, call, *args):
        return await retry_read(call, *args, attempts=self.read_attempts, sleep=self._sleep)

    async def size(self, event: TradeEvent, market: MarketInfo, source_holder: str) -> SizingDecision:
        """
        Args:
            event: The accepted event (its config snapshot drives the decision).
            market: Venue metadata for the event's token (minimum order size).
            source_holder: Address that actually holds the source's positions
                (the proxy wallet when one was resolved).
        """
        if event.config.sizing_mode == SizingMode.PROPORTIONAL:
            decision = await self._proportional(event, market, source_holder)
        else:
            decision = await self._fixed(event, market, source_holder)

        if decision.noop or decision.rejected:
            return decision
        return await self._check_bounds(event, decision)

    async def _fixed(self, event: TradeEvent, market: MarketInfo, source_holder: str) -> SizingDecision:
        cfg = event.config
        if event.price <= 0:
            return SizingDecision(side=event.side, reason=RejectReason.INVALID_PRICE, detail=f"price {event.price}")

        if cfg.threshold_enabled:
            source_value = await self._read(self.exchange.get_portfolio_value, source_holder)
            if source_value <= 0:
                return SizingDecision(side=event.side, reason=RejectReason.SOURCE_PORTFOLIO_UNAVAILABLE)
            trade_pct = event.notional / source_value * 100
            if trade_pct <= cfg.threshold_percent:
                return SizingDecision(
                    side=event.side,
                    reason=RejectReason.BELOW_SOURCE_THRESHOLD,
                    detail=f"trade is {trade_pct:.2f}% of source portfolio, need > {cfg.threshold_percent:.2f}%",
                )

        size = cfg.fixed_trade_size / event.price
        if size < market.min_order_size:
            return SizingDecision(
                side=event.side, size=size,
                reason=RejectReason.BELOW_MIN_ORDER_SIZE,
                detail=f"{size:.2f} < venue minimum {market.min_order_size}",
            )
        logger.info(f"  📐 Fixed sizing: ${cfg.fixed_trade_size:.2f} / {event.price:.3f} = {size:.4f} shares")
        return SizingDecision(side=event.side, size=size)

    async def _proportional(self, event: TradeEvent, market: MarketInfo, source_holder: str) -> SizingDecision:
        if event.price <= 0:
            return SizingDecision(side=event.side, reason=RejectReason.INVALID_PRICE, detail=f"price {event.price}")

        source_positions = await self._read(self.exchange.get_positions, source_holder)
        source_pos = _find(source_positions, event.token_id)
        source_value = await self._read(self.exchange.get_portfolio_value, source_holder)

        if source_value > 0 and source_pos is not None:
            source_alloc = _position_value(source_pos, event.price) / source_value * 100
        elif source_pos is None:
            # Source has fully exited this market.
            source_alloc = 0.0
        else:
            return SizingDecision(side=event.side, reason=RejectReason.SOURCE_PORTFOLIO_UNAVAILABLE)

        follower_value, follower_pos = await self._follower_state(event.token_id)
        current_shares = follower_pos.size if follower_pos else 0.0

        target_shares = (source_alloc / 100 * follower_value) / event.price
        delta = target_shares - current_shares

        logger.info(
            f"  📐 Proportional sizing: source alloc {source_alloc:.2f}% | follower ${follower_value:.2f} "
            f"| target {target_shares:.4f} vs held {current_shares:.4f} (Δ {delta:+.4f})"
        )

        if abs(delta) < market.min_order_size:
            return SizingDecision(
                side=event.side, size=abs(delta), noop=True,
                reason=RejectReason.BELOW_MIN_ORDER_SIZE,
                detail=f"|Δ| {abs(delta):.4f} < venue minimum {market.min_order_size}",
            )

        side = Side.BUY if delta > 0 else Side.SELL
        if side != event.side:
            return SizingDecision(
                side=side, size=abs(delta), noop=True,
                reason=RejectReason.ALLOCATION_ALREADY_MATCHED,
                detail=f"source {event.side.value} but follower needs {side.value}",
            )
        return SizingDecision(side=side, size=abs(delta))

    async def _follower_state(self, token_id: str):
        address = self.exchange.follower_address
        if not address:
            raise AuthError("Follower address is not configured")
        balance = await self._read(self.exchange.get_balance)
        positions = await self._read(self.exchange.get_positions, address)
        total = balance + sum(p.value for p in positions)
        return total, _find(positions, token_id)

    async def _check_bounds(self, event: TradeEvent, decision: SizingDecision) -> SizingDecision:
        if decision.side == Side.BUY:
            balance = await self._read(self.exchange.get_balance)
            cost = decision.size * apply_slippage(event.price, Side.BUY, event.config.slippage_percent)
            if cost > balance:
                return decision.model_copy(update={
                    "reason": RejectReason.INSUFFICIENT_BALANCE,
                    "detail": f"needs ${cost:.2f}, available ${balance:.2f}",
                })
        else:
            address = self.exchange.follower_address
            if not address:
                raise AuthError("Follower address is not configured")
            positions = await self._read(self.exchange.get_positions, address)
            held_pos = _find(positions, event.token_id)
            held = held_pos.size if held_pos else 0.0
            if decision.size > held:
                return decision.model_copy(update={
                    "reason": RejectReason.INSUFFICIENT_POSITION,
                    "detail": f"needs {decision.size:.4f} shares, holding {held:.4f}",
                })
        return decision


def _find(positions: List[Position], token_id: str) -> Optional[Position]:
    for p in positions:
        if p.token_id == token_id:
            return p
    return None


def _position_value(pos: Position, fallback_price: float) -> float:
    price = pos.current_price if pos.current_price > 0 else fallback_price
    return pos.size * price
