import asyncio
import logging
from typing import List, Optional

import httpx
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType, BalanceAllowanceParams, OrderArgs, OrderType, PartialCreateOrderOptions,
)
from py_clob_client.exceptions import PolyApiException

from copybot.config.settings import settings
from copybot.core.errors import (
    AmbiguousOrderError, APIError, AuthError, InsufficientFundsError, MarketClosedError,
    OrderError, TransientError,
)
from copybot.core.interfaces import ExchangeProvider
from copybot.core.models import MarketInfo, MarketStatus, Position, SizedOrder

logger = logging.getLogger(__name__)

USDC_DECIMALS = 1_000_000
PAGE_LIMIT = 100


def parse_position(raw: dict) -> Optional[Position]:
    """
    Maps one data-api position row onto the domain model.

    Returns None for rows without an asset or a positive size.
    """
    try:
        size = float(raw.get("size") or 0)
        token_id = raw.get("asset")
        if not token_id or size <= 0:
            return None
        avg = raw.get("avgPrice")
        if avg is None:
            avg = float(raw.get("initialValue") or 0) / size
        return Position(
            token_id=str(token_id),
            market_id=str(raw.get("conditionId") or ""),
            outcome=str(raw.get("outcome") or ""),
            size=size,
            average_entry_price=float(avg or 0),
            current_price=float(raw.get("curPrice") or 0),
            redeemable=bool(raw.get("redeemable")),
            title=raw.get("title"),
            neg_risk=bool(raw.get("negativeRisk")),
        )
    except (TypeError, ValueError) as e:
        logger.debug(f"Skipping malformed position row: {e}")
        return None


def classify_http_error(e: Exception, what: str) -> Exception:
    """Translates httpx failures into the domain error hierarchy."""
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status == 429 or status >= 500:
            return TransientError(f"{what}: HTTP {status}")
        if status in (401, 403):
            return AuthError(f"{what}: HTTP {status}")
        return APIError(f"{what}: HTTP {status} {e.response.text[:200]}")
    if isinstance(e, (httpx.TimeoutException, httpx.TransportError)):
        return TransientError(f"{what}: {e.__class__.__name__}: {e}")
    return APIError(f"{what}: {e}")


def classify_clob_error(e: PolyApiException, what: str) -> Exception:
    status = getattr(e, "status_code", None)
    message = str(getattr(e, "error_msg", None) or e)
    if status is None:
        return TransientError(f"{what}: {message}")
    if status == 429 or status >= 500:
        return TransientError(f"{what}: HTTP {status} {message}")
    if status in (401, 403):
        return AuthError(f"{what}: HTTP {status} {message}")
    return APIError(f"{what}: HTTP {status} {message}")


class PolymarketAdapter(ExchangeProvider):
    """
    Live venue adapter.

    Reads go to the public data and gamma APIs over httpx. Balance, market
    parameters and order placement go through py-clob-client, whose blocking
    calls run in a worker thread.
    """

    def __init__(self):
        if settings.WALLET_PRIVATE_KEY is None:
            raise AuthError("WALLET_PRIVATE_KEY is not set")
        try:
            self.client = ClobClient(
                host=settings.CLOB_API_URL,
                key=settings.WALLET_PRIVATE_KEY.get_secret_value(),
                chain_id=settings.CHAIN_ID,
                signature_type=settings.SIGNATURE_TYPE,
                funder=settings.FUNDER_ADDRESS,
            )
            self.client.set_api_creds(self.client.create_or_derive_api_creds())
        except Exception as e:
            raise AuthError(f"Failed to initialize Polymarket Client: {e}")

        self._follower = (settings.FUNDER_ADDRESS or self.client.get_address() or "").lower() or None
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def follower_address(self) -> Optional[str]:
        return self._follower

    async def start(self):
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=3.0),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
        logger.info(f"🔑 Polymarket adapter ready. Follower: {self._follower}")

    async def stop(self):
        if self._http:
            await self._http.aclose()
            self._http = None

    async def _get_json(self, url: str, params: dict, what: str):
        if self._http is None:
            await self.start()
        try:
            resp = await self._http.get(url, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise classify_http_error(e, what)
        except ValueError as e:
            raise APIError(f"{what}: invalid JSON ({e})")

    async def _clob(self, what: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except PolyApiException as e:
            raise classify_clob_error(e, what)

    async def get_balance(self) -> float:
        params = BalanceAllowanceParams(asset_type=AssetType.COLLATERAL, signature_type=settings.SIGNATURE_TYPE)
        data = await self._clob("balance", self.client.get_balance_allowance, params)
        try:
            return float(data.get("balance", 0)) / USDC_DECIMALS
        except (AttributeError, TypeError, ValueError):
            raise APIError(f"balance: unexpected payload {data!r}")

    async def get_positions(self, address: str) -> List[Position]:
        url = f"{settings.DATA_API_URL.rstrip('/')}/positions"
        rows = []
        offset = 0
        while True:
            params = {"user": address, "sizeThreshold": "0", "limit": str(PAGE_LIMIT), "offset": str(offset)}
            batch = await self._get_json(url, params, "positions")
            if not isinstance(batch, list):
                break
            rows.extend(batch)
            if len(batch) < PAGE_LIMIT:
                break
            offset += PAGE_LIMIT

        positions = []
        for raw in rows:
            pos = parse_position(raw)
            if pos is not None:
                positions.append(pos)
        return positions

    async def get_portfolio_value(self, address: str) -> float:
        url = f"{settings.DATA_API_URL.rstrip('/')}/value"
        data = await self._get_json(url, {"user": address}, "portfolio value")
        if isinstance(data, list):
            data = data[0] if data else {}
        try:
            return float((data or {}).get("value", 0))
        except (TypeError, ValueError):
            raise APIError(f"portfolio value: unexpected payload {data!r}")

    async def get_market(self, token_id: str) -> MarketInfo:
        url = f"{settings.GAMMA_API_URL.rstrip('/')}/markets"
        markets = await self._get_json(url, {"clob_token_ids": token_id}, "market metadata")
        if not markets or not isinstance(markets, list):
            raise APIError(f"market metadata: token ...{token_id[-8:]} not found")
        market = markets[0]

        status = MarketStatus.OPEN
        if str(market.get("umaResolutionStatus") or "").lower() == "resolved":
            status = MarketStatus.RESOLVED
        elif market.get("closed") or market.get("acceptingOrders") is False:
            status = MarketStatus.CLOSED

        tick_size = float(market.get("orderPriceMinTickSize") or 0) or None
        min_size = float(market.get("orderMinSize") or 0) or None
        neg_risk = market.get("negRisk")

        if status == MarketStatus.OPEN:
            if tick_size is None:
                tick_size = float(await self._clob("tick size", self.client.get_tick_size, token_id))
            if neg_risk is None:
                neg_risk = await self._clob("neg risk", self.client.get_neg_risk, token_id)

        return MarketInfo(
            token_id=token_id,
            tick_size=tick_size or 0.01,
            min_order_size=min_size or 5.0,
            neg_risk=bool(neg_risk),
            status=status,
        )

    async def get_proxy_wallet(self, address: str) -> Optional[str]:
        url = f"{settings.GAMMA_API_URL.rstrip('/')}/public-profile"
        try:
            profile = await self._get_json(url, {"address": address}, "proxy lookup")
        except APIError:
            # 404 for addresses that never used the venue
            return None
        if not isinstance(profile, dict):
            return None
        return profile.get("proxyWallet")

    async def submit_order(self, order: SizedOrder) -> dict:
        order_args = OrderArgs(
            token_id=order.token_id,
            price=order.limit_price,
            size=order.size,
            side=order.side.value,
        )
        options = PartialCreateOrderOptions(
            tick_size=str(order.tick_size) if order.tick_size else None,
            neg_risk=order.neg_risk,
        )

        try:
            signed = await asyncio.to_thread(self.client.create_order, order_args, options)
        except PolyApiException as e:
            raise classify_clob_error(e, "create order")
        except ValueError as e:
            raise OrderError(f"Order rejected before submission: {e}")

        try:
            resp = await asyncio.to_thread(self.client.post_order, signed, OrderType.GTC)
        except PolyApiException as e:
            status = getattr(e, "status_code", None)
            message = str(getattr(e, "error_msg", None) or e)
            if status is None:
                # The request may have reached the venue.
                raise AmbiguousOrderError(f"post order: {message}")
            if "not enough balance" in message.lower():
                raise InsufficientFundsError(message)
            if "closed" in message.lower() or "not accepting" in message.lower():
                raise MarketClosedError(message)
            raise classify_clob_error(e, "post order")

        target = order.market_name or order.token_id
        logger.info(f"📨 [REAL {order.side.value}] Venue response for {target}: {resp}")
        return resp
