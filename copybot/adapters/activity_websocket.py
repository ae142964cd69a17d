import json
import logging
from typing import AsyncIterator, List, Optional

import websockets

from copybot.core.errors import APIError
from copybot.core.interfaces import PushTransport

logger = logging.getLogger(__name__)


class ActivityWebsocketTransport(PushTransport):
    """
    Wallet-activity websocket (order events filtered by user address).

    Protocol:
      -> {"action": "subscribe", "platform": "polymarket", "version": 1,
          "type": "orders", "filters": {"users": [...]}}
      <- {"type": "ack", "subscription_id": "..."}
      -> {"action": "update", "subscription_id": "...", "filters": {"users": [...]}}
      -> {"action": "unsubscribe", "subscription_id": "..."}
      <- {"type": "event", "subscription_id": "...", "data": {...order...}}
    """

    def __init__(self, url: str, api_key: Optional[str] = None, ping_interval: float = 20.0):
        self.url = f"{url.rstrip('/')}/{api_key}" if api_key else url
        self._display_url = url
        self.ping_interval = ping_interval
        self.subscription_id: Optional[str] = None
        self._ws = None

    async def connect(self) -> None:
        logger.info(f"🔌 Activity websocket connecting... ({self._display_url})")
        self._ws = await websockets.connect(self.url, ping_interval=self.ping_interval)
        self.subscription_id = None

    async def _send(self, payload: dict):
        if self._ws is None:
            raise APIError("Activity websocket is not connected")
        await self._ws.send(json.dumps(payload))

    async def subscribe(self, addresses: List[str]) -> None:
        await self._send({
            "action": "subscribe",
            "platform": "polymarket",
            "version": 1,
            "type": "orders",
            "filters": {"users": list(addresses)},
        })

    async def update(self, addresses: List[str]) -> None:
        if not self.subscription_id:
            raise NotImplementedError("no acknowledged subscription to update")
        await self._send({
            "action": "update",
            "subscription_id": self.subscription_id,
            "filters": {"users": list(addresses)},
        })

    async def unsubscribe(self) -> None:
        if not self.subscription_id:
            return
        await self._send({"action": "unsubscribe", "subscription_id": self.subscription_id})
        self.subscription_id = None

    async def messages(self) -> AsyncIterator[dict]:
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"⚠️ Received raw message: {str(raw)[:100]}")
                    continue

                for item in data if isinstance(data, list) else [data]:
                    if not isinstance(item, dict):
                        continue
                    if item.get("type") == "ack":
                        self.subscription_id = item.get("subscription_id")
                        logger.info(f"🤝 Subscription acknowledged ({self.subscription_id})")
                        continue
                    if item.get("type") == "error":
                        logger.warning(f"⚠️ Activity websocket error: {item.get('message') or item}")
                        continue
                    yield item
        except websockets.ConnectionClosed as e:
            logger.warning(f"Websocket Closed: {e}")
        finally:
            self._ws = None

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
