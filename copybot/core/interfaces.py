from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional
from .models import (
    Position, MarketInfo, SizedOrder, TrackedSource, ExecutedPositionRecord,
    RateLimitWindow, ExecutionResult, MirrorExecutionResult,
)

class ExchangeProvider(ABC):

    @property
    @abstractmethod
    def follower_address(self) -> Optional[str]:
        """Address that holds the follower's positions (proxy/funder when one is used)."""
        pass

    @abstractmethod
    async def get_balance(self) -> float:
        """Returns the follower's current available USDC balance."""
        pass

    @abstractmethod
    async def get_positions(self, address: str) -> List[Position]:
        """Returns the open positions held by `address`."""
        pass

    @abstractmethod
    async def get_portfolio_value(self, address: str) -> float:
        """Returns the total USD value of the positions held by `address`."""
        pass

    @abstractmethod
    async def get_market(self, token_id: str) -> MarketInfo:
        """Returns tick size, minimum order size and trading status for a token."""
        pass

    @abstractmethod
    async def get_proxy_wallet(self, address: str) -> Optional[str]:
        """Returns the venue proxy wallet owned by `address`, or None if it has none."""
        pass

    @abstractmethod
    async def submit_order(self, order: SizedOrder) -> dict:
        """
        Submits an order exactly once.

        Args:
            order: The fully normalized order.

        Returns:
            dict: The raw venue response. It is validated by the caller and
            is not trusted at face value.
        """
        pass

    async def start(self):
        """Optional lifecycle hook to start background tasks."""
        pass

    async def stop(self):
        """Optional lifecycle hook to stop background tasks."""
        pass


class StorageProvider(ABC):
    """
    Persistence for everything the engine must survive a restart with.

    Assumed crash-consistent (read-after-write visible) but not ordered
    across processes.
    """

    @abstractmethod
    async def load_sources(self) -> List[TrackedSource]:
        pass

    @abstractmethod
    async def save_source(self, source: TrackedSource) -> None:
        pass

    @abstractmethod
    async def load_executed_positions(self) -> List[ExecutedPositionRecord]:
        pass

    @abstractmethod
    async def append_executed_position(self, record: ExecutedPositionRecord) -> None:
        pass

    @abstractmethod
    async def replace_executed_positions(self, records: List[ExecutedPositionRecord]) -> None:
        """Overwrites the ledger (used after pruning or an explicit clear)."""
        pass

    @abstractmethod
    async def load_rate_limits(self) -> Dict[str, RateLimitWindow]:
        pass

    @abstractmethod
    async def save_rate_limits(self, windows: Dict[str, RateLimitWindow]) -> None:
        pass

    @abstractmethod
    async def load_processed_keys(self, since: datetime) -> Dict[str, datetime]:
        """Returns idempotency keys first seen at or after `since`."""
        pass

    @abstractmethod
    async def add_processed_key(self, key: str, seen_at: datetime) -> None:
        pass

    @abstractmethod
    async def prune_processed_keys(self, before: datetime) -> None:
        pass

    @abstractmethod
    async def append_execution_result(self, result: ExecutionResult) -> None:
        pass

    @abstractmethod
    async def load_execution_history(self, limit: int = 100) -> List[ExecutionResult]:
        """Most recent results first."""
        pass

    @abstractmethod
    async def append_mirror_execution(self, result: MirrorExecutionResult) -> None:
        pass

    @abstractmethod
    async def load_mirror_history(self, limit: int = 20) -> List[MirrorExecutionResult]:
        """Most recent results first."""
        pass


class PushTransport(ABC):
    """A persistent subscription channel that delivers raw activity messages."""

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def subscribe(self, addresses: List[str]) -> None:
        pass

    @abstractmethod
    async def update(self, addresses: List[str]) -> None:
        """
        Replaces the address set of the live subscription in place.

        Raises NotImplementedError when the transport has no incremental
        update; callers fall back to unsubscribe + subscribe.
        """
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        pass

    @abstractmethod
    def messages(self) -> AsyncIterator[dict]:
        """Yields raw activity messages until the connection drops."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
