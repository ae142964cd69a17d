import asyncio
import functools
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Set

from copybot.core.errors import (
    AmbiguousOrderError, ExchangeError, InsufficientFundsError, MarketClosedError,
    OrderError, TransientError, VenueFatalError,
)
from copybot.core.events import TradeEvent
from copybot.core.interfaces import ExchangeProvider, StorageProvider
from copybot.core.models import (
    ErrorKind, ExecutedPositionRecord, ExecutionResult, MarketInfo, RejectReason,
    Side, SizedOrder, utc_now,
)
from copybot.services.no_repeat import NoRepeatLedger
from copybot.services.performance import PerformanceTracker
from copybot.services.pricing import floor_size, normalize_price
from copybot.services.retry import DEFAULT_ATTEMPTS, retry_read

logger = logging.getLogger(__name__)

DEFAULT_SUBMIT_TIMEOUT = 30.0


class InvalidOrder(Exception):
    """Raised before submission when an order cannot be normalized onto the venue grid."""

    def __init__(self, reason: RejectReason, detail: str):
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail


def parse_order_response(resp) -> Dict[str, Optional[str]]:
    """
    Validates a raw order-placement payload.

    A response is only a success if it is a non-empty dict with no embedded
    error, no explicit `success: false`, no HTTP status >= 400 and an order id.

    Returns:
        dict with `order_id` and `tx_hash` (may be None).

    Raises:
        OrderError: describing the first problem found.
    """
    if resp is None:
        raise OrderError("Empty response from venue")
    if not isinstance(resp, dict):
        raise OrderError(f"Malformed response from venue: {resp!r}")
    if not resp:
        raise OrderError("Empty response from venue")

    err = resp.get("error") or resp.get("errorMsg")
    if err:
        raise OrderError(f"Venue returned error: {err}")
    if resp.get("success") is False:
        raise OrderError(f"Venue reported success=false: {resp}")

    status = resp.get("status")
    if isinstance(status, int) and status >= 400:
        raise OrderError(f"Venue returned HTTP {status}")

    order_id = resp.get("orderID") or resp.get("orderId") or resp.get("id")
    if not order_id:
        raise OrderError(f"Response has no order id: {resp}")

    tx_hash = resp.get("transactionHash")
    hashes = resp.get("transactionsHashes")
    if not tx_hash and isinstance(hashes, list) and hashes:
        tx_hash = hashes[0]

    return {"order_id": str(order_id), "tx_hash": tx_hash}


class OrderExecutor:
    """
    Final stage of the pipeline: price/size normalization and a single,
    validated submission.

    Submission is never retried. A timeout is an unknown outcome, not a
    failure: the order may exist on the venue.
    """

    def __init__(
        self,
        exchange: ExchangeProvider,
        ledger: NoRepeatLedger,
        storage: StorageProvider,
        read_attempts: int = DEFAULT_ATTEMPTS,
        submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        tracker: Optional[PerformanceTracker] = None,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.storage = storage
        self.tracker = tracker
        self.read_attempts = read_attempts
        self.submit_timeout = submit_timeout
        self._sleep = sleep
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._late: Set[asyncio.Future] = set()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_tradable_market(self, token_id: str) -> MarketInfo:
        """
        Raises:
            MarketClosedError: if the market is closed or resolved.
            TransientError: if the metadata read kept failing.
        """
        market = await retry_read(
            self.exchange.get_market, token_id,
            attempts=self.read_attempts, sleep=self._sleep,
        )
        if not market.is_tradable:
            raise MarketClosedError(f"Market for token ...{token_id[-8:]} is {market.status.value}")
        return market

    def build_order(
        self,
        token_id: str,
        side: Side,
        size: float,
        price: float,
        slippage_percent: float,
        market: MarketInfo,
        market_name: Optional[str] = None,
    ) -> SizedOrder:
        """
        Applies slippage, tick rounding and size flooring.

        Raises:
            InvalidOrder: the price leaves (0, 1] or the size floors to zero.
        """
        try:
            limit_price = normalize_price(price, side, slippage_percent, market.tick_size)
        except ValueError as e:
            raise InvalidOrder(RejectReason.INVALID_PRICE, str(e))
        if limit_price is None:
            raise InvalidOrder(
                RejectReason.INVALID_PRICE,
                f"{price:.4f} with {slippage_percent}% slippage is outside (0, 1] at tick {market.tick_size}",
            )

        shares = floor_size(size)
        if shares <= 0:
            raise InvalidOrder(RejectReason.INVALID_SIZE, f"size {size} floors to {shares}")

        return SizedOrder(
            token_id=token_id,
            side=side,
            size=shares,
            limit_price=limit_price,
            neg_risk=market.neg_risk,
            tick_size=market.tick_size,
            market_name=market_name,
        )

    async def submit(
        self,
        order: SizedOrder,
        lock_key: str,
        source_address: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Submits `order` exactly once under the lock for `lock_key` and
        classifies the outcome. Shared by the event pipeline and the mirror.
        """
        display_name = order.market_name or f"...{order.token_id[-8:]}"
        base = dict(
            idempotency_key=idempotency_key,
            source_address=source_address,
            token_id=order.token_id,
            side=order.side,
            size=order.size,
            price=order.limit_price,
        )

        async with self._lock_for(lock_key):
            logger.info(f"  🚀 Submitting {order.side.value} {order.size:.2f} @ ${order.limit_price:.3f} for [{display_name}]")
            started = time.monotonic()
            try:
                resp = await self._await_submission(order, display_name)
                parsed = parse_order_response(resp)
            except (asyncio.TimeoutError, AmbiguousOrderError) as e:
                reason = str(e) or "submission timed out"
                logger.error(f"  ❓ Unknown outcome for [{display_name}]: {reason}. Not resubmitting.")
                result = self._result(started, base, error=reason, error_kind=ErrorKind.AMBIGUOUS)
            except VenueFatalError as e:
                logger.error(f"  ⛔ Venue refused [{display_name}]: {e}")
                result = self._result(started, base, error=str(e), error_kind=ErrorKind.VENUE_FATAL)
            except TransientError as e:
                logger.warning(f"  ⚠️ Transient failure submitting [{display_name}]: {e}")
                result = self._result(started, base, error=str(e), error_kind=ErrorKind.TRANSIENT)
            except InsufficientFundsError as e:
                logger.warning(f"  💸 Insufficient funds for [{display_name}]: {e}")
                result = self._result(started, base, error=str(e), error_kind=ErrorKind.REJECTION)
            except ExchangeError as e:
                logger.error(f"  ❌ Order failed for [{display_name}]: {e}")
                result = self._result(started, base, error=str(e), error_kind=ErrorKind.ERROR)
            except Exception as e:
                logger.error(f"  ❌ Unexpected error submitting [{display_name}]: {type(e).__name__}: {e}")
                result = self._result(started, base, error=f"{type(e).__name__}: {e}", error_kind=ErrorKind.ERROR)
            else:
                result = self._result(started, base, success=True, order_id=parsed["order_id"], tx_hash=parsed["tx_hash"])
                logger.info(f"  ✅ Order placed for [{display_name}] (ID: {result.order_id}) in {result.execution_time_ms:.0f}ms")

        if self.tracker is not None:
            self.tracker.record(result)
        return result

    async def _await_submission(self, order: SizedOrder, display_name: str):
        """
        Waits up to `submit_timeout` for the venue. The call itself is never
        cancelled: past the deadline it keeps running in the background and
        whatever it eventually returns is logged.

        Raises:
            AmbiguousOrderError: on timeout.
        """
        task = asyncio.ensure_future(self.exchange.submit_order(order))
        done, _ = await asyncio.wait({task}, timeout=self.submit_timeout)
        if not done:
            self._late.add(task)
            task.add_done_callback(functools.partial(self._on_late_response, display_name))
            raise AmbiguousOrderError(f"no response after {self.submit_timeout:g}s")
        return task.result()

    def _on_late_response(self, display_name: str, task: asyncio.Future):
        self._late.discard(task)
        if task.cancelled():
            message = f"late submission for [{display_name}] was cancelled"
        elif task.exception() is not None:
            message = f"late submission for [{display_name}] failed: {task.exception()}"
        else:
            message = f"late response for [{display_name}]: {task.result()}. Reconcile before resubmitting"
        logger.warning(f"  ❓ {message}")
        if self.tracker is not None:
            self.tracker.log_issue("warning", "execution", message)

    def _result(self, started: float, base: dict, success: bool = False, **fields) -> ExecutionResult:
        elapsed_ms = (time.monotonic() - started) * 1000
        return ExecutionResult(success=success, execution_time_ms=elapsed_ms, timestamp=self._clock(), **base, **fields)

    async def execute(self, event: TradeEvent, order: SizedOrder) -> ExecutionResult:
        """
        Submits the order built for `event`, then updates the no-repeat ledger
        (success only) and the execution history (always).
        """
        result = await self.submit(
            order,
            lock_key=event.source_address,
            source_address=event.source_address,
            idempotency_key=event.idempotency_key,
        )

        if result.success:
            record = ExecutedPositionRecord(
                market_id=event.market_id,
                outcome=event.outcome,
                timestamp=self._clock(),
                source_address=event.source_address,
            )
            self.ledger.record(record)

        try:
            if result.success:
                await self.storage.append_executed_position(record)
            await self.storage.append_execution_result(result)
        except Exception as e:
            # persistence never changes the submission outcome
            logger.error(f"💾 Failed to persist execution of {event.idempotency_key}: {e}")
            if self.tracker is not None:
                self.tracker.log_issue("error", "storage", f"execution of {event.idempotency_key} not persisted: {e}")
        return result
