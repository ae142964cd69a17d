"""
Tests for SizeCalculator.

Tests cover:
- Fixed sizing and the source threshold
- Proportional sizing, no-op deltas and contradicting directions
- Balance and holding bounds (reject, never clamp)
"""

import pytest
from conftest import SOURCE

from copybot.adapters.mock_exchange import MOCK_FOLLOWER
from copybot.core.models import MarketInfo, Position, RejectReason, Side, SizingMode
from copybot.services.sizing import SizeCalculator

MARKET = MarketInfo(token_id="token-1", tick_size=0.01, min_order_size=5.0)


@pytest.fixture
def sizer(exchange, no_sleep):
    return SizeCalculator(exchange, sleep=no_sleep)


class TestFixedSizing:

    @pytest.mark.asyncio
    async def test_usd_over_price(self, sizer, make_event):
        decision = await sizer.size(make_event(price=0.60, fixed_trade_size=20.0), MARKET, SOURCE)
        assert not decision.rejected
        assert decision.side == Side.BUY
        assert decision.size == pytest.approx(33.3333, rel=1e-4)

    @pytest.mark.asyncio
    async def test_below_min_order_size_rejects(self, sizer, make_event):
        decision = await sizer.size(make_event(price=0.60, fixed_trade_size=2.0), MARKET, SOURCE)
        assert decision.rejected
        assert decision.reason == RejectReason.BELOW_MIN_ORDER_SIZE

    @pytest.mark.asyncio
    async def test_threshold_blocks_small_source_trades(self, sizer, exchange, make_event):
        exchange.set_portfolio_value(SOURCE, 10_000.0)
        # 100 * 0.60 = $60 = 0.6% of the source portfolio
        event = make_event(price=0.60, fixed_trade_size=20.0, threshold_enabled=True, threshold_percent=5)
        decision = await sizer.size(event, MARKET, SOURCE)
        assert decision.reason == RejectReason.BELOW_SOURCE_THRESHOLD

    @pytest.mark.asyncio
    async def test_threshold_passes_large_source_trades(self, sizer, exchange, make_event):
        exchange.set_portfolio_value(SOURCE, 500.0)
        event = make_event(price=0.60, fixed_trade_size=20.0, threshold_enabled=True, threshold_percent=5)
        decision = await sizer.size(event, MARKET, SOURCE)
        assert not decision.rejected

    @pytest.mark.asyncio
    async def test_unknown_source_portfolio_rejects(self, sizer, make_event):
        event = make_event(fixed_trade_size=20.0, threshold_enabled=True)
        decision = await sizer.size(event, MARKET, SOURCE)
        assert decision.reason == RejectReason.SOURCE_PORTFOLIO_UNAVAILABLE


class TestProportionalSizing:

    @pytest.mark.asyncio
    async def test_matches_source_allocation(self, sizer, exchange, make_event):
        # Source: $250 of $1000 in the market = 25%. Follower: $400 -> $100 target.
        exchange.set_positions(SOURCE, [Position(token_id="token-1", size=500, current_price=0.5)])
        exchange.set_portfolio_value(SOURCE, 1000.0)
        exchange.balance = 400.0

        decision = await sizer.size(make_event(price=0.5, sizing_mode=SizingMode.PROPORTIONAL), MARKET, SOURCE)

        assert not decision.rejected and not decision.noop
        assert decision.side == Side.BUY
        assert decision.size * 0.5 == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_small_delta_is_noop(self, sizer, exchange, make_event):
        exchange.set_positions(SOURCE, [Position(token_id="token-1", size=500, current_price=0.5)])
        exchange.set_portfolio_value(SOURCE, 1000.0)
        exchange.balance = 300.0
        exchange.set_positions(MOCK_FOLLOWER, [Position(token_id="token-1", size=198, current_price=0.5)])

        decision = await sizer.size(make_event(price=0.5, sizing_mode=SizingMode.PROPORTIONAL), MARKET, SOURCE)
        assert decision.noop
        assert decision.reason == RejectReason.BELOW_MIN_ORDER_SIZE

    @pytest.mark.asyncio
    async def test_contradicting_direction_is_noop(self, sizer, exchange, make_event):
        # Follower is over-allocated, so a source BUY would require a follower SELL.
        exchange.set_positions(SOURCE, [Position(token_id="token-1", size=100, current_price=0.5)])
        exchange.set_portfolio_value(SOURCE, 1000.0)
        exchange.balance = 100.0
        exchange.set_positions(MOCK_FOLLOWER, [Position(token_id="token-1", size=200, current_price=0.5)])

        decision = await sizer.size(make_event(side=Side.BUY, price=0.5, sizing_mode=SizingMode.PROPORTIONAL), MARKET, SOURCE)
        assert decision.noop
        assert decision.reason == RejectReason.ALLOCATION_ALREADY_MATCHED

    @pytest.mark.asyncio
    async def test_source_exit_sells_everything(self, sizer, exchange, make_event):
        exchange.set_portfolio_value(SOURCE, 1000.0)
        exchange.balance = 100.0
        exchange.set_positions(MOCK_FOLLOWER, [Position(token_id="token-1", size=40, current_price=0.5)])

        decision = await sizer.size(make_event(side=Side.SELL, price=0.5, sizing_mode=SizingMode.PROPORTIONAL), MARKET, SOURCE)
        assert decision.side == Side.SELL
        assert decision.size == pytest.approx(40.0)
        assert not decision.rejected


class TestBounds:

    @pytest.mark.asyncio
    async def test_buy_over_balance_rejects(self, sizer, exchange, make_event):
        exchange.balance = 10.0
        decision = await sizer.size(make_event(price=0.60, fixed_trade_size=20.0), MARKET, SOURCE)
        assert decision.reason == RejectReason.INSUFFICIENT_BALANCE
        # rejected, not shrunk to fit
        assert decision.size == pytest.approx(33.3333, rel=1e-4)

    @pytest.mark.asyncio
    async def test_sell_over_holding_rejects(self, sizer, exchange, make_event):
        exchange.set_positions(MOCK_FOLLOWER, [Position(token_id="token-1", size=10, current_price=0.6)])
        decision = await sizer.size(make_event(side=Side.SELL, price=0.60, fixed_trade_size=20.0), MARKET, SOURCE)
        assert decision.reason == RejectReason.INSUFFICIENT_POSITION

    @pytest.mark.asyncio
    async def test_sell_within_holding_passes(self, sizer, exchange, make_event):
        exchange.set_positions(MOCK_FOLLOWER, [Position(token_id="token-1", size=50, current_price=0.6)])
        decision = await sizer.size(make_event(side=Side.SELL, price=0.60, fixed_trade_size=20.0), MARKET, SOURCE)
        assert not decision.rejected
