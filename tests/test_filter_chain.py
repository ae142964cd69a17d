"""
Tests for the filter chain.

Tests cover:
- Side filter
- No-repeat window (timed and forever)
- Price and value bounds
- Hourly/daily rate limits and window rollover
- Concurrent evaluations racing for the last rate-limit slot
- Stage ordering
"""

import asyncio
from datetime import timedelta

import pytest
from conftest import NOW, SOURCE

from copybot.core.models import ExecutedPositionRecord, RejectReason, Side, SideFilter, SourceConfig
from copybot.services.filter_chain import FilterChain
from copybot.services.no_repeat import NoRepeatLedger
from copybot.services.rate_limiter import SourceRateLimiter


@pytest.fixture
def ledger():
    return NoRepeatLedger()


@pytest.fixture
def limiter():
    return SourceRateLimiter()


@pytest.fixture
def chain(ledger, limiter):
    return FilterChain(ledger, limiter)


def _record(at):
    return ExecutedPositionRecord(market_id="market-1", outcome="Yes", timestamp=at, source_address=SOURCE)


class TestSideFilter:

    @pytest.mark.asyncio
    async def test_buy_only_rejects_sell(self, chain, make_event):
        decision = await chain.evaluate(make_event(side=Side.SELL, trade_side_filter=SideFilter.BUY_ONLY), NOW)
        assert decision.blocked
        assert decision.reason == RejectReason.SIDE_FILTER_BLOCKED

    @pytest.mark.asyncio
    async def test_sell_only_rejects_buy(self, chain, make_event):
        decision = await chain.evaluate(make_event(side=Side.BUY, trade_side_filter=SideFilter.SELL_ONLY), NOW)
        assert decision.reason == RejectReason.SIDE_FILTER_BLOCKED

    @pytest.mark.asyncio
    async def test_all_passes_both(self, chain, make_event):
        assert not (await chain.evaluate(make_event(side=Side.SELL), NOW)).blocked
        assert not (await chain.evaluate(make_event(side=Side.BUY), NOW)).blocked


class TestNoRepeat:

    @pytest.mark.asyncio
    async def test_blocks_inside_window(self, chain, ledger, make_event):
        ledger.record(_record(NOW))
        decision = await chain.evaluate(make_event(no_repeat_enabled=True, block_period_hours=24), NOW + timedelta(hours=23))
        assert decision.reason == RejectReason.NO_REPEAT_WINDOW_ACTIVE

    @pytest.mark.asyncio
    async def test_passes_after_window(self, chain, ledger, make_event):
        ledger.record(_record(NOW))
        decision = await chain.evaluate(make_event(no_repeat_enabled=True, block_period_hours=24), NOW + timedelta(hours=25))
        assert not decision.blocked

    @pytest.mark.asyncio
    async def test_zero_hours_blocks_forever(self, chain, ledger, make_event):
        ledger.record(_record(NOW))
        decision = await chain.evaluate(make_event(no_repeat_enabled=True, block_period_hours=0), NOW + timedelta(days=365))
        assert decision.reason == RejectReason.NO_REPEAT_WINDOW_ACTIVE

    @pytest.mark.asyncio
    async def test_other_outcome_not_blocked(self, chain, ledger, make_event):
        ledger.record(_record(NOW))
        decision = await chain.evaluate(make_event(outcome="No", no_repeat_enabled=True), NOW)
        assert not decision.blocked

    @pytest.mark.asyncio
    async def test_disabled_ignores_ledger(self, chain, ledger, make_event):
        ledger.record(_record(NOW))
        assert not (await chain.evaluate(make_event(), NOW)).blocked


class TestBounds:

    @pytest.mark.asyncio
    async def test_price_below_min(self, chain, make_event):
        decision = await chain.evaluate(make_event(price=0.03, price_limits_min=0.05), NOW)
        assert decision.reason == RejectReason.PRICE_BELOW_MIN

    @pytest.mark.asyncio
    async def test_price_above_max(self, chain, make_event):
        decision = await chain.evaluate(make_event(price=0.97, price_limits_max=0.95), NOW)
        assert decision.reason == RejectReason.PRICE_ABOVE_MAX

    @pytest.mark.asyncio
    async def test_value_below_min(self, chain, make_event):
        event = make_event(amount=10, price=0.5, value_filter_enabled=True, min_trade_value_usd=10.0)
        assert (await chain.evaluate(event, NOW)).reason == RejectReason.TRADE_VALUE_BELOW_MIN

    @pytest.mark.asyncio
    async def test_value_above_max(self, chain, make_event):
        event = make_event(amount=1000, price=0.5, value_filter_enabled=True, max_trade_value_usd=100.0)
        assert (await chain.evaluate(event, NOW)).reason == RejectReason.TRADE_VALUE_ABOVE_MAX

    @pytest.mark.asyncio
    async def test_null_bounds_are_unbounded(self, chain, make_event):
        event = make_event(amount=1_000_000, price=0.5, value_filter_enabled=True)
        assert not (await chain.evaluate(event, NOW)).blocked


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_hourly_limit_and_rollover(self, chain, make_event):
        cfg = dict(rate_limit_enabled=True, max_trades_per_hour=2, max_trades_per_day=50)
        assert not (await chain.evaluate(make_event(**cfg), NOW)).blocked
        assert not (await chain.evaluate(make_event(**cfg), NOW + timedelta(minutes=10))).blocked

        third = await chain.evaluate(make_event(**cfg), NOW + timedelta(minutes=20))
        assert third.reason == RejectReason.RATE_LIMIT_EXCEEDED_HOURLY

        after = await chain.evaluate(make_event(**cfg), NOW + timedelta(minutes=61))
        assert not after.blocked

    @pytest.mark.asyncio
    async def test_daily_limit(self, chain, make_event):
        cfg = dict(rate_limit_enabled=True, max_trades_per_hour=10, max_trades_per_day=1)
        assert not (await chain.evaluate(make_event(**cfg), NOW)).blocked
        decision = await chain.evaluate(make_event(**cfg), NOW + timedelta(hours=2))
        assert decision.reason == RejectReason.RATE_LIMIT_EXCEEDED_DAILY

    @pytest.mark.asyncio
    async def test_earlier_rejection_does_not_consume_slot(self, chain, limiter, make_event):
        cfg = dict(rate_limit_enabled=True, max_trades_per_hour=1)
        await chain.evaluate(make_event(price=0.001, **cfg), NOW)
        status = limiter.status(SOURCE, SourceConfig(**cfg), NOW)
        assert status["trades_this_hour"] == 0
        assert not (await chain.evaluate(make_event(**cfg), NOW)).blocked

    def test_status_reports_usage(self, limiter):
        cfg = SourceConfig(rate_limit_enabled=True, max_trades_per_hour=3)
        status = limiter.status(SOURCE, cfg, NOW)
        assert status["trades_this_hour"] == 0
        assert status["max_trades_per_hour"] == 3
        assert status["hour_resets_at"] is None

    @pytest.mark.asyncio
    async def test_racing_for_last_slot_admits_one(self, chain, make_event):
        cfg = dict(rate_limit_enabled=True, max_trades_per_hour=10, max_trades_per_day=50)
        for n in range(9):
            assert not (await chain.evaluate(make_event(tx_hash=f"0x{n}", **cfg), NOW)).blocked

        decisions = await asyncio.gather(
            chain.evaluate(make_event(tx_hash="0xa", **cfg), NOW),
            chain.evaluate(make_event(tx_hash="0xb", **cfg), NOW),
        )

        assert sorted(d.blocked for d in decisions) == [False, True]
        blocked = next(d for d in decisions if d.blocked)
        assert blocked.reason == RejectReason.RATE_LIMIT_EXCEEDED_HOURLY
