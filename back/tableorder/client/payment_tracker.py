"""
Payment tracking for SEPAY_QR / CARD_ONLINE orders.

The countdown is driven by `tick(now)`; the background loop only calls it once
a second and polls the API every `poll_interval` seconds. The warning and the
expiry each fire at most once per deadline, and nothing fires after success,
failure or cancel().
"""
import asyncio
import logging
import math
from datetime import datetime
from enum import Enum
from typing import Callable

from ..errors import (
    InvalidSessionError,
    NetworkError,
    PaymentFailedError,
    PaymentTimeoutError,
    TableOrderError,
)
from ..models import PaymentRead, utcnow
from ..realtime import EVENT_PAYMENT_COMPLETED, EVENT_TIMER_UPDATE
from ..settings import settings
from ..statuses import PaymentStatus
from .api import ApiClient, mask_id

logger = logging.getLogger(__name__)


class PaymentOutcome(str, Enum):
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentTracker:
    def __init__(
        self,
        api: ApiClient,
        order_id: int,
        *,
        warning_threshold: int | None = None,
        poll_interval: float = 3.0,
        on_warning: Callable[[int], None] | None = None,
        on_expired: Callable[[PaymentTimeoutError], None] | None = None,
        on_success: Callable[[PaymentRead], None] | None = None,
        on_failed: Callable[[PaymentFailedError], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.api = api
        self.order_id = order_id
        self.warning_threshold = (
            settings.payment_warning_seconds if warning_threshold is None else warning_threshold
        )
        self.poll_interval = poll_interval
        self.on_warning = on_warning
        self.on_expired = on_expired
        self.on_success = on_success
        self.on_failed = on_failed
        self.clock = clock

        self.payment: PaymentRead | None = None
        self.outcome = PaymentOutcome.WAITING
        self.time_remaining = 0
        self.cancelled = False
        self._warned = False
        self._task: asyncio.Task | None = None

    @property
    def finished(self) -> bool:
        return self.cancelled or self.outcome != PaymentOutcome.WAITING

    # ---- lifecycle ----

    async def start(self, run: bool = True) -> PaymentRead:
        """Create (or resume) the payment attempt; with run, start the countdown loop."""
        data = await self.api.post("/payments", json={"order_id": self.order_id})
        self._apply(PaymentRead.model_validate(data))
        if run and not self.finished:
            self._task = asyncio.create_task(self._run())
        return self.payment

    def cancel(self) -> None:
        """Tear down; no callback fires afterwards."""
        self.cancelled = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_poll = loop.time() + self.poll_interval
        while not self.finished:
            self.tick()
            if self.finished:
                break
            if loop.time() >= next_poll:
                next_poll = loop.time() + self.poll_interval
                try:
                    await self.poll_once()
                except InvalidSessionError:
                    # Session gone; the API client already asked for a rescan
                    logger.warning("Payment tracking stopped: table session lost")
                    self.cancel()
                    break
                except TableOrderError as e:
                    logger.warning(f"Payment poll failed, will retry: {e.code}")
                if self.finished:
                    break
            await asyncio.sleep(1)

    # ---- countdown ----

    def tick(self, now: datetime | None = None) -> int:
        """Advance the countdown to `now`; returns seconds remaining."""
        if self.payment is None or self.finished:
            return self.time_remaining
        now = now or self.clock()
        remaining = max(0, math.ceil((self.payment.expires_at - now).total_seconds()))
        self.time_remaining = remaining
        if remaining <= 0:
            self._expire()
        elif remaining <= self.warning_threshold and not self._warned:
            self._warned = True
            logger.info(f"Payment {mask_id(self.payment.id)}: {remaining}s left")
            if self.on_warning:
                self.on_warning(remaining)
        return remaining

    # ---- server state ----

    def _apply(self, payment: PaymentRead) -> None:
        previous = self.payment
        self.payment = payment
        if previous is not None and payment.expires_at > previous.expires_at:
            # Deadline moved (extended here or on another device)
            self._warned = False
        if payment.status == PaymentStatus.COMPLETED:
            self._succeed()
        elif payment.status == PaymentStatus.FAILED:
            self._fail(payment.failure_reason)
        elif payment.status == PaymentStatus.EXPIRED:
            self._expire()

    def _succeed(self) -> None:
        if self.finished:
            return
        self.outcome = PaymentOutcome.SUCCESS
        logger.info(f"Payment {mask_id(self.payment.id)} confirmed")
        if self.on_success:
            self.on_success(self.payment)

    def _fail(self, reason: str | None) -> None:
        if self.finished:
            return
        self.outcome = PaymentOutcome.FAILED
        if self.on_failed:
            self.on_failed(PaymentFailedError(reason))

    def _expire(self) -> None:
        if self.finished:
            return
        self.outcome = PaymentOutcome.EXPIRED
        self.time_remaining = 0
        if self.on_expired:
            self.on_expired(PaymentTimeoutError())

    async def poll_once(self) -> PaymentRead | None:
        if self.payment is None or self.finished:
            return self.payment
        try:
            data = await self.api.get(f"/payments/{self.payment.id}")
        except NetworkError as e:
            logger.warning(f"Payment poll failed, will retry: {e.message}")
            return self.payment
        if not self.cancelled:
            self._apply(PaymentRead.model_validate(data))
        return self.payment

    async def verify(self) -> PaymentOutcome:
        """Ask the server to re-check the payment; repeated confirmations are no-ops."""
        if self.payment is None or self.outcome == PaymentOutcome.SUCCESS or self.cancelled:
            return self.outcome
        data = await self.api.post(f"/payments/{self.payment.id}/verify")
        payment = PaymentRead.model_validate(data)
        if not self.cancelled:
            self._apply(payment)
        return self.outcome

    async def extend_timeout(self) -> PaymentRead:
        """User-requested deadline reset."""
        if self.payment is None:
            raise TableOrderError("Payment has not started")
        if self.outcome == PaymentOutcome.EXPIRED:
            raise PaymentTimeoutError()
        data = await self.api.post(f"/payments/{self.payment.id}/extend")
        self._apply(PaymentRead.model_validate(data))
        self._warned = False
        self.tick()
        return self.payment

    async def handle_event(self, event: dict) -> None:
        """Push events only hint that the state changed; the API is asked for the truth."""
        if self.finished or self.payment is None:
            return
        if event.get("type") == "reconnected":
            await self.poll_once()
        elif event.get("order_id") == self.order_id and event.get("type") in (
            EVENT_PAYMENT_COMPLETED,
            EVENT_TIMER_UPDATE,
        ):
            try:
                await self.verify()
            except NetworkError as e:
                logger.warning(f"Verify after push failed: {e.message}")
