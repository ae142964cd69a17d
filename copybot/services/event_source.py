import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from copybot.core.errors import ExchangeError
from copybot.core.events import TradeEvent
from copybot.core.interfaces import ExchangeProvider, PushTransport
from copybot.core.models import FeedChannel, Position, Side, TrackedSource, utc_now
from copybot.services.retry import DEFAULT_ATTEMPTS, backoff_delay, retry_read

logger = logging.getLogger(__name__)

EventCallback = Callable[[TradeEvent], Awaitable[None]]

MIN_POLL_DELTA = 0.01
RAW_SHARE_UNITS = 1_000_000
OVERLAP_POLL_INTERVALS = 4


def _to_datetime(ts) -> datetime:
    if isinstance(ts, (int, float)) and ts > 0:
        if ts > 1e12:  # milliseconds
            ts = ts / 1000.0
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return utc_now()


def _valid_price(price: float) -> bool:
    return 0 < price <= 1


def parse_push_message(msg: dict) -> Optional[dict]:
    """
    Normalizes a raw activity message into plain fields.

    Accepts the bare order payload or one wrapped as {"type": ..., "data": {...}}.
    Share counts prefer `shares_normalized`; raw `shares` are base units (6 decimals).

    Returns:
        dict with user, market_id, token_id, outcome, side, amount, price,
        timestamp, tx_hash, title. None when the message is not a usable trade.
    """
    if not isinstance(msg, dict):
        return None
    data = msg.get("data") if isinstance(msg.get("data"), dict) else msg

    user = data.get("user")
    token_id = data.get("token_id")
    if not user or not token_id:
        return None

    try:
        side = Side(str(data.get("side", "")).upper())
    except ValueError:
        return None

    try:
        if data.get("shares_normalized") is not None:
            amount = float(data["shares_normalized"])
        else:
            amount = float(data.get("shares", 0)) / RAW_SHARE_UNITS
        price = float(data.get("price", 0))
    except (TypeError, ValueError):
        return None

    if amount <= 0 or not _valid_price(price):
        logger.debug(f"Dropping push message with amount={amount} price={price}")
        return None

    return {
        "user": str(user).lower(),
        "market_id": str(data.get("condition_id") or data.get("market_slug") or ""),
        "token_id": str(token_id),
        "outcome": str(data.get("token_label") or data.get("outcome") or ""),
        "side": side,
        "amount": amount,
        "price": price,
        "timestamp": _to_datetime(data.get("timestamp")),
        "tx_hash": data.get("tx_hash") or data.get("order_hash"),
        "title": data.get("title") or data.get("market_slug"),
    }


def build_event(
    source: TrackedSource,
    market_id: str,
    token_id: str,
    outcome: str,
    side: Side,
    amount: float,
    price: float,
    timestamp: datetime,
    channel: FeedChannel,
    tx_hash: Optional[str] = None,
    bucket_seconds: float = 15.0,
) -> TradeEvent:
    return TradeEvent(
        source_address=source.address,
        source_label=source.label,
        market_id=market_id,
        token_id=token_id,
        outcome=outcome,
        side=side,
        amount=amount,
        price=price,
        timestamp=timestamp,
        tx_hash=tx_hash,
        channel=channel,
        synthetic_bucket_seconds=bucket_seconds,
        config=source.config.model_copy(deep=True),
    )


def log_detection(event: TradeEvent, title: Optional[str] = None):
    side_emoji = "📈" if event.side == Side.BUY else "📉"
    logger.info(f"{'='*60}")
    logger.info(f"{side_emoji} SOURCE {event.side.value} DETECTED via {event.channel.value}")
    logger.info(f"   Trader: {event.source_label} ({event.source_address[:10]}...)")
    if title:
        logger.info(f"   Q: {title}")
    logger.info(f"   Token ID: {event.token_id}")
    logger.info(f"   💰 {event.amount:.2f} shares of {event.outcome or '?'} @ {event.price:.3f} (${event.notional:.2f})")
    logger.info(f"{'='*60}")


class AddressResolver:
    """
    Maps source EOAs to the proxy wallets that hold their positions.

    Resolution never blocks monitoring: on failure the raw address is
    watched and the lookup is tried again next time.
    """

    def __init__(self, exchange: ExchangeProvider, read_attempts: int = DEFAULT_ATTEMPTS,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.exchange = exchange
        self.read_attempts = read_attempts
        self._sleep = sleep
        self._proxy_by_eoa: Dict[str, str] = {}
        self._eoa_by_proxy: Dict[str, str] = {}

    async def resolve(self, address: str) -> str:
        address = address.lower()
        if address in self._proxy_by_eoa:
            return self._proxy_by_eoa[address]
        try:
            proxy = await retry_read(self.exchange.get_proxy_wallet, address,
                                     attempts=self.read_attempts, sleep=self._sleep)
        except ExchangeError as e:
            logger.warning(f"⚠️ Proxy lookup failed for {address[:10]}..., monitoring raw address: {e}")
            return address
        if not proxy:
            logger.info(f"ℹ️ No proxy wallet for {address[:10]}..., monitoring raw address")
            return address
        proxy = proxy.lower()
        self._proxy_by_eoa[address] = proxy
        self._eoa_by_proxy[proxy] = address
        if proxy != address:
            logger.info(f"🔗 {address[:10]}... trades through proxy {proxy[:10]}...")
        return proxy

    def owner_of(self, address: str) -> str:
        """The source address behind an observed (possibly proxy) address."""
        address = address.lower()
        return self._eoa_by_proxy.get(address, address)


class PushFeed:
    """
    Low-latency subscription feed with bounded reconnects.

    After `max_reconnect_attempts` consecutive failed reconnects the feed
    disables itself for the rest of the process and the poll feed carries on
    alone.
    """

    def __init__(
        self,
        transport: PushTransport,
        on_message: Callable[[dict], Awaitable[None]],
        base_delay: float = 5.0,
        max_delay: float = 60.0,
        max_reconnect_attempts: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self._on_message = on_message
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep

        self.addresses: List[str] = []
        self.connected = False
        self.subscribed = False
        self.disabled = False
        self.reconnect_attempts = 0
        self.backoff_history: List[float] = []
        self._running = False

    async def run(self):
        self._running = True
        logger.info("🔌 Push feed starting...")
        while self._running and not self.disabled:
            try:
                await self.transport.connect()
                self.connected = True
                self.reconnect_attempts = 0
                logger.info("✅ Push feed connected")
                if self.addresses:
                    await self.transport.subscribe(list(self.addresses))
                    self.subscribed = True
                    logger.info(f"📡 Subscribed to {len(self.addresses)} addresses")
                async for msg in self.transport.messages():
                    await self._dispatch(msg)
                logger.warning("Push feed stream closed.")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Push feed connection failed: {e}")
            finally:
                self.connected = False
                self.subscribed = False

            if not self._running:
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.max_reconnect_attempts:
                self.disabled = True
                logger.error(
                    f"⛔ Push feed gave up after {self.max_reconnect_attempts} reconnect attempts. "
                    f"Polling is now the only activity source."
                )
                break

            delay = backoff_delay(self.reconnect_attempts, self.base_delay, self.max_delay)
            self.backoff_history.append(delay)
            logger.info(f"🔄 Reconnecting push feed in {delay:.0f}s (attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})")
            await self._sleep(delay)

    async def _dispatch(self, msg: dict):
        try:
            await self._on_message(msg)
        except Exception as e:
            logger.error(f"Error handling push message: {e} | Msg sample: {str(msg)[:100]}")

    async def set_addresses(self, addresses: List[str]):
        """
        Replaces the subscribed address set. While disconnected the new set is
        only stored and is sent on the next connect.
        """
        self.addresses = sorted(set(a.lower() for a in addresses))
        if not self.connected or self.disabled:
            return

        if not self.addresses:
            if self.subscribed:
                await self.transport.unsubscribe()
                self.subscribed = False
                logger.info("📡 No addresses left, push subscription removed")
            return

        if not self.subscribed:
            await self.transport.subscribe(list(self.addresses))
            self.subscribed = True
            logger.info(f"📡 Subscribed to {len(self.addresses)} addresses")
            return

        try:
            await self.transport.update(list(self.addresses))
            logger.info(f"📡 Updated push subscription to {len(self.addresses)} addresses")
            return
        except NotImplementedError:
            logger.debug("Transport has no in-place update, re-subscribing")
        except Exception as e:
            logger.warning(f"⚠️ Subscription update failed ({e}), re-subscribing")

        try:
            await self.transport.unsubscribe()
            self.subscribed = False
            await self.transport.subscribe(list(self.addresses))
            self.subscribed = True
            logger.info(f"📡 Re-subscribed to {len(self.addresses)} addresses")
        except Exception as e:
            logger.error(f"❌ Re-subscribe failed: {e}")

    async def stop(self):
        self._running = False
        await self.transport.close()

    def status(self) -> dict:
        return {
            "connected": self.connected,
            "subscribed": self.subscribed,
            "disabled": self.disabled,
            "reconnect_attempts": self.reconnect_attempts,
            "backoff_history": list(self.backoff_history),
            "addresses": len(self.addresses),
        }


class PollFeed:
    """
    Interval feed that diffs position snapshots.

    The first snapshot of an address is a baseline only. Afterwards a size
    increase is a BUY, a decrease a SELL and a vanished position a SELL of
    its previous size.
    """

    def __init__(
        self,
        exchange: ExchangeProvider,
        resolver: AddressResolver,
        emit: EventCallback,
        interval_seconds: float = 15.0,
        read_attempts: int = DEFAULT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.exchange = exchange
        self.resolver = resolver
        self._emit = emit
        self.interval_seconds = interval_seconds
        self.read_attempts = read_attempts
        self._sleep = sleep

        self.sources: Dict[str, TrackedSource] = {}
        self._snapshots: Dict[str, Dict[str, Position]] = {}
        self._running = False
        self.last_poll_at: Optional[datetime] = None
        self.polls = 0

    def forget(self, monitoring_address: str):
        self._snapshots.pop(monitoring_address, None)

    async def run(self):
        self._running = True
        logger.info(f"⏱️ Poll feed started. Interval {self.interval_seconds:.0f}s")
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in polling loop: {e}")
            await self._sleep(self.interval_seconds)

    def stop(self):
        self._running = False

    async def poll_once(self, now: Optional[datetime] = None) -> List[TradeEvent]:
        now = now or utc_now()

        events: List[TradeEvent] = []
        for source in list(self.sources.values()):
            if not source.active:
                continue
            holder = await self.resolver.resolve(source.address)
            try:
                positions = await self._read_positions(holder)
            except ExchangeError as e:
                if holder == source.address:
                    logger.warning(f"Failed to poll {source.label} ({holder[:10]}...): {e}")
                    continue
                logger.warning(f"Failed to poll proxy {holder[:10]}... of {source.label}: {e}. Trying EOA {source.address[:10]}...")
                try:
                    positions = await self._read_positions(source.address)
                except ExchangeError as eoa_error:
                    logger.error(f"❌ Both proxy and EOA reads failed for {source.label}: {eoa_error}")
                    continue
                holder = source.address
            events.extend(self._diff(source, holder, positions, now))

        self.last_poll_at = now
        self.polls += 1
        for event in events:
            await self._emit(event)
        return events

    async def _read_positions(self, address: str) -> List[Position]:
        return await retry_read(self.exchange.get_positions, address,
                                attempts=self.read_attempts, sleep=self._sleep)

    def _diff(self, source: TrackedSource, holder: str, positions: List[Position], now: datetime) -> List[TradeEvent]:
        current = {p.token_id: p for p in positions if p.size > 0}
        previous = self._snapshots.get(holder)
        self._snapshots[holder] = current

        if previous is None:
            logger.info(f"📸 Baseline for {source.label}: {len(current)} positions")
            return []

        events = []
        for token_id, pos in current.items():
            prev_size = previous[token_id].size if token_id in previous else 0.0
            delta = pos.size - prev_size
            if abs(delta) < MIN_POLL_DELTA:
                continue
            side = Side.BUY if delta > 0 else Side.SELL
            event = self._event(source, pos, side, abs(delta), now)
            if event:
                events.append(event)

        for token_id, prev in previous.items():
            if token_id in current:
                continue
            event = self._event(source, prev, Side.SELL, prev.size, now)
            if event:
                events.append(event)
        return events

    def _event(self, source: TrackedSource, pos: Position, side: Side, amount: float, now: datetime) -> Optional[TradeEvent]:
        price = pos.current_price if pos.current_price > 0 else pos.average_entry_price
        if not _valid_price(price):
            logger.debug(f"Dropping poll delta for ...{pos.token_id[-8:]} with price {price}")
            return None
        event = build_event(
            source, pos.market_id, pos.token_id, pos.outcome, side, amount, price, now,
            channel=FeedChannel.POLL, bucket_seconds=self.interval_seconds,
        )
        log_detection(event, pos.title)
        return event


class ChannelOverlap:
    """
    Drops the second sighting of one fill when it arrives on the other feed.

    Push events are keyed by tx hash and poll events by a synthetic key, so
    the deduplicator cannot match them. Instead the last admitted event per
    (source, token, side) is remembered, and an event from the other channel
    inside `horizon` of it is treated as the same trade, whichever feed saw
    it first.
    """

    def __init__(self, horizon: timedelta):
        self.horizon = horizon
        self._last: Dict[Tuple[str, str, Side], Tuple[FeedChannel, datetime]] = {}

    def admit(self, event: TradeEvent, now: datetime) -> bool:
        self._prune(now)
        key = (event.source_address, event.token_id, event.side)
        seen = self._last.get(key)
        if seen is not None and seen[0] != event.channel:
            return False
        self._last[key] = (event.channel, now)
        return True

    def _prune(self, now: datetime):
        cutoff = now - self.horizon
        for key in [k for k, (_, at) in self._last.items() if at <= cutoff]:
            del self._last[key]

    def __len__(self):
        return len(self._last)


class EventSource:
    """
    Merges the push and poll feeds into one TradeEvent stream.

    The push feed is optional. Without a transport, or once it has disabled
    itself, polling alone keeps the stream alive.
    """

    def __init__(
        self,
        exchange: ExchangeProvider,
        transport: Optional[PushTransport] = None,
        poll_interval_seconds: float = 15.0,
        reconnect_base_seconds: float = 5.0,
        reconnect_max_seconds: float = 60.0,
        max_reconnect_attempts: int = 10,
        read_attempts: int = DEFAULT_ATTEMPTS,
        overlap_horizon_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._clock = clock
        # long enough for the next poll to see a pushed fill
        horizon = overlap_horizon_seconds or OVERLAP_POLL_INTERVALS * poll_interval_seconds
        self.overlap = ChannelOverlap(timedelta(seconds=horizon))
        self.resolver = AddressResolver(exchange, read_attempts=read_attempts, sleep=sleep)
        self.poll = PollFeed(exchange, self.resolver, self._emit, poll_interval_seconds, read_attempts, sleep)
        self.push: Optional[PushFeed] = None
        if transport is not None:
            self.push = PushFeed(
                transport, self._on_push_message,
                base_delay=reconnect_base_seconds,
                max_delay=reconnect_max_seconds,
                max_reconnect_attempts=max_reconnect_attempts,
                sleep=sleep,
            )
        self.sources: Dict[str, TrackedSource] = {}
        self._listeners: List[EventCallback] = []
        self._tasks: List[asyncio.Task] = []

    def add_listener(self, callback: EventCallback):
        self._listeners.append(callback)

    async def _emit(self, event: TradeEvent):
        if not self.overlap.admit(event, self._clock()):
            logger.info(f"🔁 {event.side.value} ...{event.token_id[-8:]} for {event.source_label} already reported by the other feed")
            return
        for callback in self._listeners:
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Error delivering {event.idempotency_key} to listener: {e}")

    async def update_sources(self, sources: List[TrackedSource]):
        """Applies a new tracked-source set to both feeds."""
        previous = set(self.sources)
        self.sources = {s.address: s for s in sources}
        self.poll.sources = dict(self.sources)

        monitored = []
        for s in sources:
            holder = await self.resolver.resolve(s.address)
            if s.active:
                monitored.append(holder)
            elif s.address in previous:
                self.poll.forget(holder)
                self.poll.forget(s.address)
        for removed in previous - set(self.sources):
            self.poll.forget(await self.resolver.resolve(removed))
            self.poll.forget(removed)

        active = sum(1 for s in sources if s.active)
        logger.info(f"🔄 Event source updated: watching {active} of {len(sources)} sources.")
        if self.push:
            await self.push.set_addresses(monitored)

    async def _on_push_message(self, msg: dict):
        parsed = parse_push_message(msg)
        if parsed is None:
            return
        owner = self.resolver.owner_of(parsed["user"])
        source = self.sources.get(owner)
        if source is None or not source.active:
            return

        event = build_event(
            source, parsed["market_id"], parsed["token_id"], parsed["outcome"],
            parsed["side"], parsed["amount"], parsed["price"], parsed["timestamp"],
            channel=FeedChannel.PUSH, tx_hash=parsed["tx_hash"],
            bucket_seconds=self.poll.interval_seconds,
        )
        log_detection(event, parsed["title"])
        await self._emit(event)

    async def start(self):
        self._tasks.append(asyncio.create_task(self.poll.run()))
        if self.push:
            self._tasks.append(asyncio.create_task(self.push.run()))
        logger.info(f"🛰️ Event source started (push={'on' if self.push else 'off'}, poll every {self.poll.interval_seconds:.0f}s)")

    async def stop(self):
        self.poll.stop()
        if self.push:
            await self.push.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def status(self) -> dict:
        return {
            "push": self.push.status() if self.push else None,
            "poll": {
                "interval_seconds": self.poll.interval_seconds,
                "last_poll_at": self.poll.last_poll_at,
                "polls": self.poll.polls,
                "sources": sum(1 for s in self.sources.values() if s.active),
            },
            "overlap_keys": len(self.overlap),
        }
