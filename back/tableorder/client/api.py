"""
HTTP access to the ordering API for the customer client.

Every response is an envelope; `ApiClient` returns `data` and turns anything
else into the matching TableOrderError. The session cookie lives in the
client's cookie jar and is never read by calling code.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable

import httpx

from ..errors import InvalidSessionError, NetworkError, TableOrderError, error_from_payload

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

SessionLostHook = Callable[[TableOrderError], "Awaitable[None] | None"]


def mask_id(value) -> str:
    """Shorten an identifier for log lines."""
    text = str(value or "")
    if len(text) <= 8:
        return "***"
    return f"{text[:4]}...{text[-2:]}"


class ApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        on_session_lost: SessionLostHook | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + API_PREFIX,
            transport=transport,
            timeout=timeout,
        )
        self.on_session_lost = on_session_lost

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, path: str, *, json: Any = None, params: dict | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise NetworkError(str(e) or "Network error")

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_success and isinstance(payload, dict) and payload.get("success"):
            return payload.get("data")

        # success: false is an error even on HTTP 200
        error = error_from_payload(
            payload.get("error") if isinstance(payload, dict) else None,
            response.status_code,
        )
        if response.status_code == 401 or isinstance(error, InvalidSessionError):
            await self._session_lost(error)
        raise error

    async def _session_lost(self, error: TableOrderError) -> None:
        logger.info(f"Session lost ({error.code}); rescan required")
        if self.on_session_lost is None:
            return
        result = self.on_session_lost(error)
        if inspect.isawaitable(result):
            await result

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.request("DELETE", path, **kwargs)
