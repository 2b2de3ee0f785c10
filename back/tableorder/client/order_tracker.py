"""
Order status tracking.

Pull first: the tracking projection is fetched on start, re-fetched on a timer,
and re-fetched whenever a push event mentions the order. Push events never
change state on their own.
"""
import asyncio
import logging
from typing import Callable

from ..errors import InvalidSessionError, NetworkError, TableOrderError
from ..models import OrderTracking, TimelineEntry
from ..statuses import is_terminal as is_terminal_status
from .api import ApiClient

logger = logging.getLogger(__name__)


def merge_timeline(previous: list[TimelineEntry], current: list[TimelineEntry]) -> list[TimelineEntry]:
    """A completed checkpoint stays completed, even if a stale response says otherwise."""
    done = {entry.status: entry for entry in previous if entry.completed}
    merged = []
    for entry in current:
        kept = done.get(entry.status)
        if kept is not None and not entry.completed:
            merged.append(kept)
        else:
            merged.append(entry)
    return merged


class OrderTracker:
    def __init__(
        self,
        api: ApiClient,
        order_id: int,
        *,
        refresh_interval: float = 10.0,
        on_update: Callable[[OrderTracking], None] | None = None,
        on_terminal: Callable[[OrderTracking], None] | None = None,
    ):
        self.api = api
        self.order_id = order_id
        self.refresh_interval = refresh_interval
        self.on_update = on_update
        self.on_terminal = on_terminal

        self.tracking: OrderTracking | None = None
        self.error: TableOrderError | None = None
        self.stopped = False
        self._task: asyncio.Task | None = None

    @property
    def is_terminal(self) -> bool:
        return self.tracking is not None and is_terminal_status(self.tracking.current_status)

    async def start(self, run: bool = True) -> OrderTracking:
        tracking = await self.refresh()
        if run and not self.stopped:
            self._task = asyncio.create_task(self._run())
        return tracking

    def cancel(self) -> None:
        self.stopped = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while not self.stopped:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except NetworkError as e:
                logger.warning(f"Order refresh failed, will retry: {e.message}")
            except InvalidSessionError:
                # Session gone; the API client already asked for a rescan
                self.stopped = True
            except TableOrderError as e:
                logger.warning(f"Order refresh failed: {e.code}")

    async def refresh(self) -> OrderTracking:
        data = await self.api.get(f"/orders/{self.order_id}/tracking")
        tracking = OrderTracking.model_validate(data)
        if self.stopped:
            return self.tracking or tracking
        if self.tracking is not None:
            tracking.timeline = merge_timeline(self.tracking.timeline, tracking.timeline)
        self.tracking = tracking
        self.error = None
        if self.on_update:
            self.on_update(tracking)
        if self.is_terminal:
            self.stopped = True
            if self.on_terminal:
                self.on_terminal(tracking)
        return tracking

    async def handle_event(self, event: dict) -> None:
        if self.stopped:
            return
        if event.get("type") == "reconnected" or event.get("order_id") == self.order_id:
            try:
                await self.refresh()
            except NetworkError as e:
                self.error = e
                logger.warning(f"Refresh after push failed: {e.message}")
