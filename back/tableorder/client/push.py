"""
Push channel: websocket to the bridge's /orders namespace.

Events are normalized on arrival (status vocabularies, legacy event names,
camelCase ids) so subscribers only ever see canonical values. The connection
is re-established with bounded retries; after a reconnect a synthetic
{"type": "reconnected"} event tells subscribers to re-fetch what they missed.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from ..realtime import EVENT_ORDER_STATUS_CHANGED, EVENT_PAYMENT_COMPLETED
from ..statuses import normalize_order_status, normalize_payment_status

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]

LEGACY_EVENT_TYPES = {
    "status_update": EVENT_ORDER_STATUS_CHANGED,
    "order_paid": EVENT_PAYMENT_COMPLETED,
}


def normalize_event(raw: dict) -> dict:
    event = dict(raw)
    event["type"] = LEGACY_EVENT_TYPES.get(event.get("type"), event.get("type"))
    if "order_id" not in event and "orderId" in event:
        event["order_id"] = event.pop("orderId")
    if "status" in event and event["status"] is not None:
        try:
            event["status"] = normalize_order_status(event["status"])
        except ValueError:
            logger.warning(f"Dropping unknown status in push event: {event['status']!r}")
            event["status"] = None
    if "payment_status" in event and event["payment_status"] is not None:
        try:
            event["payment_status"] = normalize_payment_status(event["payment_status"])
        except ValueError:
            event["payment_status"] = None
    return event


def backoff_delays(max_attempts: int = 5, initial_delay: float = 1.0, max_delay: float = 5.0) -> list[float]:
    return [min(initial_delay * 2 ** attempt, max_delay) for attempt in range(max_attempts)]


class PushChannel:
    def __init__(
        self,
        url: str,
        tenant_id: int,
        table_id: int | None = None,
        role: str = "customer",
        *,
        token: str | None = None,
        cookie: str | None = None,
        max_attempts: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 5.0,
        connector=connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = url.rstrip("/")
        self.tenant_id = tenant_id
        self.table_id = table_id
        self.role = role
        self.token = token
        self.cookie = cookie
        self.delays = backoff_delays(max_attempts, initial_delay, max_delay)
        self.connector = connector
        self.sleep = sleep

        self.connected = False
        self.gave_up = False
        self._closed = False
        self._ws = None
        self._handlers: list[Handler] = []

    @property
    def url(self) -> str:
        params = {"tenantId": self.tenant_id, "role": self.role}
        if self.table_id is not None:
            params["tableId"] = self.table_id
        if self.token:
            params["token"] = self.token
        return f"{self.base_url}/orders?{urlencode(params)}"

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        self._handlers.append(handler)
        return lambda: self._handlers.remove(handler)

    async def _dispatch(self, event: dict) -> None:
        for handler in list(self._handlers):
            if self._closed:
                return
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Push handler failed for {event.get('type')}")

    async def run(self) -> None:
        """Receive until close(), reconnecting with backoff; gives up after max_attempts failures."""
        failures = 0
        has_connected = False
        headers = {"Cookie": self.cookie} if self.cookie else None
        while not self._closed:
            try:
                async with self.connector(self.url, additional_headers=headers) as ws:
                    self._ws = ws
                    self.connected = True
                    failures = 0
                    if has_connected:
                        logger.info("Push channel reconnected")
                        await self._dispatch({"type": "reconnected"})
                    has_connected = True
                    async for raw in ws:
                        if self._closed:
                            break
                        try:
                            message = json.loads(raw)
                        except ValueError:
                            logger.warning("Ignoring malformed push message")
                            continue
                        if isinstance(message, dict):
                            await self._dispatch(normalize_event(message))
            except (OSError, WebSocketException) as e:
                logger.warning(f"Push channel error: {e}")
            self._ws = None
            self.connected = False
            if self._closed:
                break
            if failures >= len(self.delays):
                logger.warning(f"Push channel gave up after {failures} reconnect attempts")
                self.gave_up = True
                break
            await self.sleep(self.delays[failures])
            failures += 1

    async def close(self) -> None:
        """Stop receiving; no handler is called after this returns."""
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
