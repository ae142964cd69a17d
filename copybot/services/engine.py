import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from copybot.core.errors import ExchangeError, MarketClosedError, VenueFatalError
from copybot.core.events import TradeEvent
from copybot.core.interfaces import ExchangeProvider, StorageProvider
from copybot.core.models import (
    ErrorKind, ExecutedPositionRecord, ExecutionResult, MirrorExecutionResult,
    MirrorPreview, MirrorTrade, OutcomeStatus, PerformanceStats, PipelineOutcome, RejectReason,
    SystemIssue, TrackedSource, utc_now,
)
from copybot.services.deduplicator import Deduplicator
from copybot.services.execution import InvalidOrder, OrderExecutor
from copybot.services.filter_chain import FilterChain
from copybot.services.no_repeat import DEFAULT_RETENTION, NoRepeatLedger
from copybot.services.performance import PerformanceTracker
from copybot.services.position_mirror import DEFAULT_SLIPPAGE_PERCENT, DEFAULT_TOLERANCE_PERCENT, PositionMirror
from copybot.services.rate_limiter import SourceRateLimiter
from copybot.services.retry import DEFAULT_ATTEMPTS
from copybot.services.sizing import SizeCalculator

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_HORIZON = timedelta(minutes=1)
OUTCOME_HISTORY = 500


class ReplicationEngine:
    """
    Owns the replication pipeline and all of its state.

    Event -> Deduplicator -> FilterChain -> SizeCalculator -> OrderExecutor.
    Each accepted event runs in its own task under a per-source lock, so one
    source is processed strictly in order while sources run side by side.
    """

    def __init__(
        self,
        exchange: ExchangeProvider,
        storage: StorageProvider,
        dedup_horizon: timedelta = DEFAULT_DEDUP_HORIZON,
        read_attempts: int = DEFAULT_ATTEMPTS,
        submit_timeout: float = 30.0,
        resolve: Optional[Callable[[str], Awaitable[str]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.exchange = exchange
        self.storage = storage
        self._resolve = resolve
        self._clock = clock

        self.performance = PerformanceTracker(clock=clock)
        self.dedup = Deduplicator(dedup_horizon)
        self.ledger = NoRepeatLedger()
        self.rate_limiter = SourceRateLimiter()
        self.filters = FilterChain(self.ledger, self.rate_limiter)
        self.sizer = SizeCalculator(exchange, read_attempts=read_attempts, sleep=sleep)
        self.executor = OrderExecutor(
            exchange, self.ledger, storage,
            read_attempts=read_attempts, submit_timeout=submit_timeout, sleep=sleep, clock=clock,
            tracker=self.performance,
        )
        self.mirror = PositionMirror(exchange, self.executor, storage, resolve=resolve,
                                     read_attempts=read_attempts, sleep=sleep)

        self.sources: Dict[str, TrackedSource] = {}
        self.disabled_sources: Dict[str, str] = {}
        self.event_source = None
        self._outcomes: Deque[PipelineOutcome] = deque(maxlen=OUTCOME_HISTORY)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()

    # --- lifecycle -------------------------------------------------------

    async def restore(self):
        """Loads sources, ledger, rate-limit windows and recent idempotency keys from storage."""
        now = self._clock()
        self.sources = {s.address: s for s in await self.storage.load_sources()}
        self.ledger = NoRepeatLedger(await self.storage.load_executed_positions())
        self.filters.ledger = self.ledger
        self.executor.ledger = self.ledger
        self.rate_limiter.restore(await self.storage.load_rate_limits())
        self.dedup.restore(await self.storage.load_processed_keys(now - self.dedup.horizon), now)
        logger.info(f"💾 Engine restored: {len(self.sources)} sources, {len(self.ledger.records())} executed positions")

    async def snapshot(self):
        """Persists in-memory state and prunes what has aged out."""
        now = self._clock()
        await self.prune(now)
        await self.storage.save_rate_limits(self.rate_limiter.snapshot())
        await self.storage.prune_processed_keys(now - self.dedup.horizon)

    def attach(self, event_source):
        """Subscribes the engine to an EventSource's stream."""
        self.event_source = event_source
        event_source.add_listener(self.on_trade_event)

    async def wait_idle(self):
        """Waits for every in-flight event task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- configuration ---------------------------------------------------

    async def update_sources(self, sources: List[TrackedSource]):
        """
        Applies a new source set. A source whose config changed is re-enabled
        if a venue-fatal error had disabled it.
        """
        for source in sources:
            existing = self.sources.get(source.address)
            if existing is None or existing.config != source.config:
                if self.disabled_sources.pop(source.address, None) is not None:
                    logger.info(f"✅ {source.label} re-enabled by configuration update")
            await self.storage.save_source(source)
        self.sources = {s.address: s for s in sources}
        logger.info(f"🔄 Engine updated: {len(self.sources)} sources ({sum(1 for s in sources if s.active)} active)")

    def enable_source(self, address: str) -> bool:
        reason = self.disabled_sources.pop(address.lower(), None)
        if reason is not None:
            logger.info(f"✅ Source {address[:10]}... re-enabled (was: {reason})")
        return reason is not None

    def _disable(self, address: str, reason: str):
        self.disabled_sources[address] = reason
        logger.error(f"⛔ Submissions for {address[:10]}... disabled: {reason}")
        self.performance.log_issue("error", "source", f"{address} disabled: {reason}")

    # --- pipeline --------------------------------------------------------

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    async def on_trade_event(self, event: TradeEvent) -> Optional[asyncio.Task]:
        """
        Listener for the event stream. Duplicates stop here; everything else
        is processed in a background task.
        """
        now = self._clock()
        key = event.idempotency_key
        if not self.dedup.check_and_mark(key, now):
            self._outcomes.append(PipelineOutcome(
                idempotency_key=key, source_address=event.source_address,
                status=OutcomeStatus.DUPLICATE, timestamp=now,
            ))
            return None

        try:
            await self.storage.add_processed_key(key, now)
        except Exception as e:
            # the in-memory mark still guards this process
            logger.error(f"💾 Failed to persist idempotency key {key}: {e}")
            self.performance.log_issue("error", "storage", f"idempotency key {key} not persisted: {e}")

        task = asyncio.create_task(self.process_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process_event(self, event: TradeEvent) -> PipelineOutcome:
        async with self._lock_for(event.source_address):
            try:
                outcome = await self._decide(event)
            except MarketClosedError as e:
                self._disable(event.source_address, str(e))
                outcome = self._outcome(event, OutcomeStatus.REJECTED, RejectReason.MARKET_CLOSED, str(e))
            except VenueFatalError as e:
                self._disable(event.source_address, str(e))
                outcome = self._outcome(event, OutcomeStatus.FAILED, detail=str(e))
            except ExchangeError as e:
                logger.error(f"  ❌ Venue error while processing {event.idempotency_key}: {e}")
                outcome = self._outcome(event, OutcomeStatus.FAILED, detail=str(e))
            except Exception as e:
                logger.error(f"Error processing trade event {event.idempotency_key}: {e}")
                outcome = self._outcome(event, OutcomeStatus.FAILED, detail=str(e))

            if event.config.rate_limit_enabled:
                await self.storage.save_rate_limits(self.rate_limiter.snapshot())

        self._outcomes.append(outcome)
        reason = f" [{outcome.reason.value}]" if outcome.reason else ""
        logger.info(f"🧾 {event.source_label} {event.side.value} ...{event.token_id[-8:]}: {outcome.status.value}{reason}")
        return outcome

    async def _decide(self, event: TradeEvent) -> PipelineOutcome:
        address = event.source_address
        logger.info(f"🧠 Analyzing Event: {event.source_label} {event.side.value} {event.amount:.2f} @ {event.price:.3f}")

        if address in self.disabled_sources:
            return self._outcome(event, OutcomeStatus.REJECTED, RejectReason.SOURCE_DISABLED, self.disabled_sources[address])
        source = self.sources.get(address)
        if source is not None and not source.active:
            return self._outcome(event, OutcomeStatus.REJECTED, RejectReason.SOURCE_INACTIVE)

        decision = await self.filters.evaluate(event, self._clock())
        if decision.blocked:
            return self._outcome(event, OutcomeStatus.REJECTED, decision.reason, decision.detail)

        market = await self.executor.get_tradable_market(event.token_id)
        holder = await self._resolve(address) if self._resolve else address

        sizing = await self.sizer.size(event, market, holder)
        if sizing.noop:
            return self._outcome(event, OutcomeStatus.NOOP, sizing.reason, sizing.detail)
        if sizing.rejected:
            return self._outcome(event, OutcomeStatus.REJECTED, sizing.reason, sizing.detail)

        try:
            order = self.executor.build_order(
                event.token_id, sizing.side, sizing.size, event.price,
                event.config.slippage_percent, market,
                market_name=f"{event.outcome} ...{event.token_id[-8:]}",
            )
        except InvalidOrder as e:
            logger.info(f"  🛑 Blocked [{e.reason.value}] {e.detail}")
            return self._outcome(event, OutcomeStatus.REJECTED, e.reason, e.detail)

        result = await self.executor.execute(event, order)
        if result.success:
            return self._outcome(event, OutcomeStatus.EXECUTED, result=result)
        if result.error_kind == ErrorKind.VENUE_FATAL:
            self._disable(address, result.error or "venue refused order")
        return self._outcome(event, OutcomeStatus.FAILED, detail=result.error, result=result)

    def _outcome(self, event: TradeEvent, status: OutcomeStatus, reason: Optional[RejectReason] = None,
                 detail: Optional[str] = None, result: Optional[ExecutionResult] = None) -> PipelineOutcome:
        return PipelineOutcome(
            idempotency_key=event.idempotency_key,
            source_address=event.source_address,
            status=status,
            reason=reason,
            detail=detail,
            result=result,
            timestamp=self._clock(),
        )

    # --- maintenance -----------------------------------------------------

    def ledger_retention(self) -> Optional[timedelta]:
        """
        How long executed-position records must be kept. None while any
        source with no-repeat enabled blocks forever.
        """
        retention = DEFAULT_RETENTION
        for s in self.sources.values():
            if not s.config.no_repeat_enabled:
                continue
            if s.config.block_period_hours == 0:
                return None
            retention = max(retention, timedelta(hours=s.config.block_period_hours))
        return retention

    async def prune(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        retention = self.ledger_retention()
        if retention is None:
            logger.debug("Ledger pruning skipped: a source blocks repeats forever")
            return 0
        removed = self.ledger.prune(now, retention)
        if removed:
            await self.storage.replace_executed_positions(self.ledger.records())
        return removed

    async def clear_ledger(self, market_id: Optional[str] = None):
        self.ledger.clear(market_id)
        await self.storage.replace_executed_positions(self.ledger.records())

    # --- mirror ----------------------------------------------------------

    async def mirror_preview(self, source_address: str,
                             slippage_tolerance_percent: float = DEFAULT_TOLERANCE_PERCENT) -> MirrorPreview:
        return await self.mirror.preview(source_address, slippage_tolerance_percent)

    async def mirror_execute(self, trades: List[MirrorTrade], slippage_percent: float = DEFAULT_SLIPPAGE_PERCENT,
                             tracked_address: Optional[str] = None) -> MirrorExecutionResult:
        return await self.mirror.execute(trades, slippage_percent, tracked_address)

    # --- status ----------------------------------------------------------

    def rate_limit_status(self, address: Optional[str] = None) -> Dict[str, dict]:
        now = self._clock()
        targets = [self.sources[address.lower()]] if address else list(self.sources.values())
        return {s.address: self.rate_limiter.status(s.address, s.config, now) for s in targets}

    def no_repeat_ledger(self) -> List[ExecutedPositionRecord]:
        return self.ledger.records()

    async def execution_history(self, limit: int = 100) -> List[ExecutionResult]:
        return await self.storage.load_execution_history(limit)

    async def mirror_history(self, limit: int = 20) -> List[MirrorExecutionResult]:
        return await self.storage.load_mirror_history(limit)

    def recent_outcomes(self, limit: int = 50) -> List[PipelineOutcome]:
        return list(self._outcomes)[-limit:][::-1]

    def performance_stats(self) -> PerformanceStats:
        """Success rate, latency and the most recent issues across event and mirror submissions."""
        return self.performance.stats(self._clock())

    def issues(self, limit: int = 50) -> List[SystemIssue]:
        return self.performance.issues(limit)

    def feed_status(self) -> dict:
        status = self.event_source.status() if self.event_source else {"push": None, "poll": None}
        status["dedup_keys"] = len(self.dedup)
        status["disabled_sources"] = dict(self.disabled_sources)
        status["in_flight"] = len(self._tasks)
        return status
