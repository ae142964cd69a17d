import logging
import uuid
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Union

from copybot.core.errors import InsufficientFundsError, OrderError
from copybot.core.interfaces import ExchangeProvider
from copybot.core.models import MarketInfo, Position, Side, SizedOrder

logger = logging.getLogger(__name__)

MOCK_FOLLOWER = "0x000000000000000000000000000000000000f011"


class MockExchangeAdapter(ExchangeProvider):
    """
    In-memory venue for dry runs and tests.

    Orders fill immediately at their limit price against the simulated
    balance unless a response or error has been queued with `queue_response`.
    Reads can be made to fail with `fail_next` to exercise retry paths.
    """

    def __init__(self, initial_balance: float = 10000.0, follower_address: str = MOCK_FOLLOWER):
        self.balance = initial_balance
        self._follower = follower_address.lower()
        self._positions: Dict[str, Dict[str, Position]] = defaultdict(dict)  # address -> token_id -> Position
        self._portfolio_values: Dict[str, float] = {}
        self._markets: Dict[str, MarketInfo] = {}
        self._proxies: Dict[str, str] = {}
        self._responses: Deque[Union[dict, Exception, None]] = deque()
        self._read_errors: Dict[str, Deque[Exception]] = defaultdict(deque)

        self.submitted: List[SizedOrder] = []
        self.read_calls: Dict[str, int] = defaultdict(int)
        logger.info(f"👻 Mock Exchange Initialized with ${self.balance:.2f}")

    # --- scripting -------------------------------------------------------

    def set_positions(self, address: str, positions: List[Position]):
        self._positions[address.lower()] = {p.token_id: p for p in positions}

    def set_portfolio_value(self, address: str, value: Optional[float]):
        """Overrides the computed value. None reverts to the sum of positions."""
        if value is None:
            self._portfolio_values.pop(address.lower(), None)
        else:
            self._portfolio_values[address.lower()] = value

    def set_market(self, market: MarketInfo):
        self._markets[market.token_id] = market

    def set_proxy(self, eoa: str, proxy: str):
        self._proxies[eoa.lower()] = proxy.lower()

    def queue_response(self, response: Union[dict, Exception, None]):
        """The next submission returns `response` (or raises it) instead of filling."""
        self._responses.append(response)

    def fail_next(self, method: str, error: Exception, times: int = 1):
        for _ in range(times):
            self._read_errors[method].append(error)

    def _read(self, method: str):
        self.read_calls[method] += 1
        errors = self._read_errors.get(method)
        if errors:
            raise errors.popleft()

    # --- ExchangeProvider ------------------------------------------------

    @property
    def follower_address(self) -> Optional[str]:
        return self._follower

    async def get_balance(self) -> float:
        self._read("get_balance")
        return self.balance

    async def get_positions(self, address: str) -> List[Position]:
        self._read("get_positions")
        return [p.model_copy() for p in self._positions.get(address.lower(), {}).values()]

    async def get_portfolio_value(self, address: str) -> float:
        self._read("get_portfolio_value")
        address = address.lower()
        if address in self._portfolio_values:
            return self._portfolio_values[address]
        return sum(p.value for p in self._positions.get(address, {}).values())

    async def get_market(self, token_id: str) -> MarketInfo:
        self._read("get_market")
        return self._markets.get(token_id) or MarketInfo(token_id=token_id)

    async def get_proxy_wallet(self, address: str) -> Optional[str]:
        self._read("get_proxy_wallet")
        return self._proxies.get(address.lower())

    async def submit_order(self, order: SizedOrder) -> dict:
        self.submitted.append(order)
        if self._responses:
            scripted = self._responses.popleft()
            if isinstance(scripted, Exception):
                raise scripted
            return scripted
        return self._fill(order)

    def _fill(self, order: SizedOrder) -> dict:
        book = self._positions[self._follower]
        cost = order.size * order.limit_price
        target = order.market_name or order.token_id

        if order.side == Side.BUY:
            if cost > self.balance:
                raise InsufficientFundsError(f"Mock Insufficient Funds: Have ${self.balance:.2f}, need ${cost:.2f}")
            self.balance -= cost
            pos = book.get(order.token_id)
            if pos:
                new_size = pos.size + order.size
                pos.average_entry_price = (pos.size * pos.average_entry_price + cost) / new_size
                pos.size = new_size
            else:
                book[order.token_id] = Position(
                    token_id=order.token_id,
                    size=order.size,
                    average_entry_price=order.limit_price,
                    current_price=order.limit_price,
                    neg_risk=order.neg_risk,
                )
            logger.info(f"👻 [MOCK BUY] Bought {order.size} of {target} @ {order.limit_price}. New Bal: ${self.balance:.2f}")
        else:
            pos = book.get(order.token_id)
            if not pos or pos.size < order.size:
                raise OrderError(f"Mock Sell Failed: Not enough shares. Have {pos.size if pos else 0}")
            pos.size -= order.size
            if pos.size <= 0:
                del book[order.token_id]
            self.balance += cost
            logger.info(f"👻 [MOCK SELL] Sold {order.size} of {target} @ {order.limit_price}. New Bal: ${self.balance:.2f}")

        return {"success": True, "orderID": f"mock-{uuid.uuid4()}", "status": "matched"}
