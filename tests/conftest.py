"""
Shared fixtures: an offline venue, in-memory storage, a scripted push
transport and a fixed clock.
"""

from collections import deque
from datetime import datetime, timezone
from typing import List, Optional

import pytest

from copybot.adapters.memory_storage import InMemoryStorage
from copybot.adapters.mock_exchange import MockExchangeAdapter
from copybot.core.events import TradeEvent
from copybot.core.interfaces import PushTransport
from copybot.core.models import FeedChannel, Side, SourceConfig, TrackedSource

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
SOURCE = "0x00000000000000000000000000000000000000aa"


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FakeTransport(PushTransport):
    """
    Scripted push transport.

    Connect attempts numbered >= `fail_from` raise. Each successful
    connection replays the next batch from `batches` and then ends.
    """

    def __init__(self, fail_from: Optional[int] = None, batches=None, supports_update: bool = True):
        self.fail_from = fail_from
        self.batches = deque(batches or [])
        self.supports_update = supports_update
        self.connect_calls = 0
        self.subscriptions: List[List[str]] = []
        self.updates: List[List[str]] = []
        self.unsubscribes = 0
        self.closed = False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_from is not None and self.connect_calls >= self.fail_from:
            raise ConnectionError("connection refused")

    async def subscribe(self, addresses: List[str]) -> None:
        self.subscriptions.append(list(addresses))

    async def update(self, addresses: List[str]) -> None:
        if not self.supports_update:
            raise NotImplementedError
        self.updates.append(list(addresses))

    async def unsubscribe(self) -> None:
        self.unsubscribes += 1

    async def messages(self):
        batch = self.batches.popleft() if self.batches else []
        for msg in batch:
            yield msg

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def exchange():
    return MockExchangeAdapter(initial_balance=1000.0)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def make_source():
    def _make(address: str = SOURCE, label: str = "Whale", active: bool = True, **config) -> TrackedSource:
        return TrackedSource(address=address, label=label, active=active, config=SourceConfig(**config))
    return _make


@pytest.fixture
def make_event():
    def _make(
        side: Side = Side.BUY,
        amount: float = 100.0,
        price: float = 0.60,
        token_id: str = "token-1",
        market_id: str = "market-1",
        outcome: str = "Yes",
        tx_hash: Optional[str] = "0xabc",
        channel: FeedChannel = FeedChannel.PUSH,
        timestamp: datetime = NOW,
        source_address: str = SOURCE,
        **config,
    ) -> TradeEvent:
        return TradeEvent(
            source_address=source_address,
            source_label="Whale",
            market_id=market_id,
            token_id=token_id,
            outcome=outcome,
            side=side,
            amount=amount,
            price=price,
            timestamp=timestamp,
            tx_hash=tx_hash,
            channel=channel,
            config=SourceConfig(**config),
        )
    return _make
