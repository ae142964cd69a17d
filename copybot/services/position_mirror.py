"""
Position Mirror

Reconciles the follower's whole portfolio to a source's allocation in one
batch, as opposed to the event pipeline which copies one trade at a time.

Features:
- Preview: per-market BUY/SELL/SKIP with allocation %, cost and warnings
- Full-close SELLs for follower positions the source does not hold
- Two-phase execution: every SELL first, then a fresh balance read, then BUYs
- Independent legs, no rollback on partial failure
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from copybot.core.errors import ExchangeError
from copybot.core.interfaces import ExchangeProvider, StorageProvider
from copybot.core.models import (
    MirrorAction, MirrorExecutionResult, MirrorExecutionSummary, MirrorLegResult,
    MirrorPreview, MirrorStatus, MirrorSummary, MirrorTrade, Position, Side,
)
from copybot.services.execution import InvalidOrder, OrderExecutor
from copybot.services.retry import DEFAULT_ATTEMPTS, retry_read

logger = logging.getLogger(__name__)

MIN_ORDER_SHARES = 5.0
MIN_DELTA_SHARES = 0.5
DEFAULT_TOLERANCE_PERCENT = 10.0
DEFAULT_SLIPPAGE_PERCENT = 2.0
PHASE_PAUSE_SECONDS = 1.0


class PositionMirror:
    def __init__(
        self,
        exchange: ExchangeProvider,
        executor: OrderExecutor,
        storage: StorageProvider,
        resolve: Optional[Callable[[str], Awaitable[str]]] = None,
        read_attempts: int = DEFAULT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            resolve: Maps a source address to the address holding its
                positions (proxy wallet). Identity when omitted.
        """
        self.exchange = exchange
        self.executor = executor
        self.storage = storage
        self._resolve = resolve
        self.read_attempts = read_attempts
        self._sleep = sleep

    async def _read(self, call, *args):
        return await retry_read(call, *args, attempts=self.read_attempts, sleep=self._sleep)

    async def preview(self, source_address: str, slippage_tolerance_percent: float = DEFAULT_TOLERANCE_PERCENT) -> MirrorPreview:
        source_address = source_address.lower()
        logger.info(f"🪞 Calculating mirror preview for {source_address[:10]}...")

        label = None
        for s in await self.storage.load_sources():
            if s.address == source_address:
                label = s.label
                break

        holder = await self._resolve(source_address) if self._resolve else source_address
        their_positions = await self._read(self.exchange.get_positions, holder)
        their_value = await self._read(self.exchange.get_portfolio_value, holder)

        follower = self.exchange.follower_address
        if not follower:
            raise ExchangeError("Follower wallet is not configured")
        your_positions = await self._read(self.exchange.get_positions, follower)
        your_balance = await self._read(self.exchange.get_balance)
        your_value = your_balance + sum(p.value for p in your_positions)

        logger.info(
            f"  Source: {len(their_positions)} positions, ${their_value:.2f} | "
            f"Follower: {len(your_positions)} positions, ${your_value:.2f}"
        )

        yours: Dict[str, Position] = {p.token_id: p for p in your_positions}
        theirs = {p.token_id for p in their_positions}

        trades: List[MirrorTrade] = []
        for pos in their_positions:
            trade = _match_trade(pos, yours.get(pos.token_id), their_value, your_value, slippage_tolerance_percent)
            if trade:
                trades.append(trade)
        for pos in your_positions:
            if pos.token_id not in theirs:
                trade = _close_trade(pos, your_value)
                if trade:
                    trades.append(trade)

        summary = MirrorSummary(
            total_buy_trades=sum(1 for t in trades if t.action == MirrorAction.BUY and t.status != MirrorStatus.SKIPPED),
            total_sell_trades=sum(1 for t in trades if t.action == MirrorAction.SELL and t.status != MirrorStatus.SKIPPED),
            total_skipped=sum(1 for t in trades if t.status == MirrorStatus.SKIPPED),
            total_warnings=sum(1 for t in trades if t.status == MirrorStatus.WARNING),
            estimated_buy_cost=sum(t.estimated_cost for t in trades if t.action == MirrorAction.BUY),
            estimated_sell_proceeds=abs(sum(t.estimated_cost for t in trades if t.action == MirrorAction.SELL)),
        )
        logger.info(
            f"🪞 Preview: {summary.total_buy_trades} buys, {summary.total_sell_trades} sells, "
            f"{summary.total_skipped} skipped, {summary.total_warnings} warnings"
        )

        return MirrorPreview(
            tracked_address=source_address,
            tracked_label=label,
            your_portfolio_value=your_value,
            their_portfolio_value=their_value,
            trades=trades,
            summary=summary,
            slippage_tolerance=slippage_tolerance_percent,
        )

    async def execute(
        self,
        trades: List[MirrorTrade],
        slippage_percent: float = DEFAULT_SLIPPAGE_PERCENT,
        tracked_address: Optional[str] = None,
    ) -> MirrorExecutionResult:
        """
        Runs the selected legs. SELLs all complete before the balance is
        re-read and BUYs start, so freed capital is visible to the buys.
        """
        active = [t for t in trades if t.selected and t.action != MirrorAction.SKIP and t.status != MirrorStatus.SKIPPED]
        sells = [t for t in active if t.action == MirrorAction.SELL]
        buys = [t for t in active if t.action == MirrorAction.BUY]
        lock_key = f"mirror:{tracked_address or 'adhoc'}"

        summary = MirrorExecutionSummary(sells_attempted=len(sells), buys_attempted=len(buys))
        summary.balance_before_sells = await self._read(self.exchange.get_balance)
        logger.info(f"🪞 Executing mirror: {len(sells)} SELLs first, then {len(buys)} BUYs (balance ${summary.balance_before_sells:.2f})")

        results: List[MirrorLegResult] = []

        logger.info(f"=== PHASE 1: {len(sells)} SELL orders ===")
        for trade in sells:
            leg, _ = await self._run_leg(trade, slippage_percent, lock_key)
            results.append(leg)
            if leg.success:
                summary.sells_succeeded += 1

        if sells and buys:
            await self._sleep(PHASE_PAUSE_SECONDS)

        available = await self._read(self.exchange.get_balance)
        summary.balance_after_sells = available

        logger.info(f"=== PHASE 2: {len(buys)} BUY orders against ${available:.2f} ===")
        for trade in buys:
            leg, spent = await self._run_leg(trade, slippage_percent, lock_key, available=available)
            results.append(leg)
            if leg.success:
                summary.buys_succeeded += 1
                available -= spent

        executed = sum(1 for r in results if r.success)
        failed = len(results) - executed
        result = MirrorExecutionResult(
            success=failed == 0,
            executed_trades=executed,
            failed_trades=failed,
            results=results,
            summary=summary,
            tracked_address=tracked_address,
        )
        logger.info(f"🪞 Mirror complete: {executed} succeeded, {failed} failed")
        await self.storage.append_mirror_execution(result)
        return result

    async def _run_leg(self, trade: MirrorTrade, slippage_percent: float, lock_key: str, available: Optional[float] = None) -> Tuple[MirrorLegResult, float]:
        side = Side.BUY if trade.action == MirrorAction.BUY else Side.SELL
        leg = dict(market_title=trade.market_title, token_id=trade.token_id, action=trade.action)
        logger.info(f"  {trade.action.value} {trade.shares_to_trade:.2f} shares of [{trade.market_title}]")

        try:
            market = await self.executor.get_tradable_market(trade.token_id)
            order = self.executor.build_order(
                trade.token_id, side, trade.shares_to_trade, trade.current_price,
                slippage_percent, market, market_name=trade.market_title,
            )
        except (InvalidOrder, ExchangeError) as e:
            logger.warning(f"  ✗ {trade.action.value} not submitted for [{trade.market_title}]: {e}")
            return MirrorLegResult(success=False, error=str(e), **leg), 0.0

        cost = order.size * order.limit_price
        if available is not None and cost > available:
            error = f"insufficient balance after sells: needs ${cost:.2f}, have ${available:.2f}"
            logger.warning(f"  ✗ BUY skipped for [{trade.market_title}]: {error}")
            return MirrorLegResult(success=False, error=error, **leg), 0.0

        result = await self.executor.submit(order, lock_key=lock_key)
        if result.success:
            return MirrorLegResult(success=True, order_id=result.order_id, **leg), cost
        return MirrorLegResult(success=False, error=result.error, **leg), 0.0


def _match_trade(theirs: Position, yours: Optional[Position], their_total: float, your_total: float, tolerance: float) -> Optional[MirrorTrade]:
    price = theirs.current_price
    title = theirs.title or theirs.market_id[:20] or "Unknown"
    common = dict(
        market_id=theirs.market_id,
        market_title=title,
        token_id=theirs.token_id,
        outcome=theirs.outcome or "Unknown",
        their_shares=theirs.size,
        their_avg_price=theirs.average_entry_price,
        current_price=price,
        neg_risk=theirs.neg_risk,
    )

    if theirs.redeemable:
        return MirrorTrade(
            action=MirrorAction.SKIP, status=MirrorStatus.SKIPPED,
            warning="Market resolved - position is redeemable", **common,
        )

    their_alloc = (theirs.size * price / their_total * 100) if their_total > 0 else 0.0
    your_shares = yours.size if yours else 0.0
    your_alloc = (your_shares * price / your_total * 100) if your_total > 0 else 0.0

    target_shares = (their_alloc / 100 * your_total / price) if price > 0 else 0.0
    delta = target_shares - your_shares
    if abs(delta) < MIN_DELTA_SHARES:
        return None

    action = MirrorAction.BUY if delta > 0 else MirrorAction.SELL
    shares = abs(delta)
    cost = shares * price if action == MirrorAction.BUY else -(shares * price)
    deviation = abs((price - theirs.average_entry_price) / theirs.average_entry_price) * 100 if theirs.average_entry_price > 0 else 0.0

    status, warning = MirrorStatus.READY, None
    if shares < MIN_ORDER_SHARES:
        status, warning = MirrorStatus.SKIPPED, f"Below minimum order size ({MIN_ORDER_SHARES:g} shares)"
    elif deviation > tolerance:
        status, warning = MirrorStatus.WARNING, f"Price moved {deviation:.1f}% from their entry"

    return MirrorTrade(
        their_allocation_percent=their_alloc,
        your_shares=your_shares,
        your_allocation_percent=your_alloc,
        action=action,
        shares_to_trade=round(shares, 2),
        estimated_cost=round(cost, 2),
        status=status,
        warning=warning,
        price_deviation_percent=round(deviation, 1),
        selected=status == MirrorStatus.READY,
        **common,
    )


def _close_trade(yours: Position, your_total: float) -> Optional[MirrorTrade]:
    if yours.size < MIN_DELTA_SHARES:
        return None

    price = yours.current_price
    your_alloc = (yours.size * price / your_total * 100) if your_total > 0 else 0.0
    common = dict(
        market_id=yours.market_id,
        market_title=yours.title or yours.market_id[:20] or "Unknown",
        token_id=yours.token_id,
        outcome=yours.outcome or "Unknown",
        your_shares=yours.size,
        your_allocation_percent=your_alloc,
        current_price=price,
        neg_risk=yours.neg_risk,
    )

    if yours.redeemable:
        return MirrorTrade(
            action=MirrorAction.SKIP, status=MirrorStatus.SKIPPED,
            warning="Market resolved - redeem instead of selling", **common,
        )

    status, warning = MirrorStatus.READY, "They don't have this position"
    if yours.size < MIN_ORDER_SHARES:
        status, warning = MirrorStatus.SKIPPED, f"Below minimum order size ({MIN_ORDER_SHARES:g} shares)"

    return MirrorTrade(
        action=MirrorAction.SELL,
        shares_to_trade=round(yours.size, 2),
        estimated_cost=round(-(yours.size * price), 2),
        status=status,
        warning=warning,
        selected=status == MirrorStatus.READY,
        **common,
    )
