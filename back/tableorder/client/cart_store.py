"""
Client-side cart store.

One instance per table session, injected wherever the cart is shown. Every
mutation is applied locally first, then replaced wholesale by the server's
cart; a failed mutation restores the pre-mutation snapshot and re-raises.
Mutations run one at a time, in the order they were issued.
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable
from uuid import uuid4

from ..errors import (
    ItemUnavailableError,
    NetworkError,
    NotFoundError,
    TableOrderError,
    ValidationError,
)
from ..models import Availability, CartLine, CartRead, CartSelections, MenuItemRead
from ..pricing import CartTotals, compute_cart_totals, resolve_unit_price, validate_selections
from .api import ApiClient, mask_id

logger = logging.getLogger(__name__)


class CartState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass
class FailedMutation:
    """A mutation rolled back on a network error, kept for a manual retry."""
    label: str
    send: Callable[[], Awaitable[dict]]
    error: TableOrderError


Listener = Callable[["CartStore"], None]


def _instructions(text: str | None) -> str | None:
    if text is None:
        return None
    return text.strip() or None


class CartStore:
    def __init__(self, api: ApiClient):
        self.api = api
        self.state = CartState.UNINITIALIZED
        self.cart = CartRead()
        self.error: TableOrderError | None = None
        self.pending = 0
        self.failed: list[FailedMutation] = []
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []

    # ---- derived values ----

    @property
    def items(self) -> list[CartLine]:
        return self.cart.items

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.cart.items)

    @property
    def totals(self) -> CartTotals:
        return compute_cart_totals(self.cart.items, self.cart.tax_rate, self.cart.service_charge_rate)

    @property
    def subtotal(self) -> Decimal:
        return self.totals.subtotal

    @property
    def tax(self) -> Decimal:
        return self.totals.tax

    @property
    def service_charge(self) -> Decimal:
        return self.totals.service_charge

    @property
    def total(self) -> Decimal:
        return self.totals.total

    def line(self, line_id: str) -> CartLine | None:
        return next((line for line in self.cart.items if line.id == line_id), None)

    # ---- listeners ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Cart listener failed")

    # ---- server sync ----

    def _apply(self, data: dict) -> None:
        self.cart = CartRead.model_validate(data)
        self.error = None
        self.state = CartState.READY

    async def fetch_cart(self) -> CartRead:
        """Pull the authoritative cart. On failure the current items stay as they are."""
        async with self._lock:
            self.state = CartState.LOADING
            self._notify()
            try:
                data = await self.api.get("/cart")
            except TableOrderError as e:
                logger.warning(f"Cart fetch failed: {e.code}")
                self.error = e
                self.state = CartState.ERROR
                self._notify()
                raise
            self._apply(data)
            self._notify()
            return self.cart

    async def settled(self) -> None:
        """Wait until mutations issued so far have finished."""
        async with self._lock:
            pass

    async def _mutate(self, label: str, optimistic: Callable[[CartRead], None], send: Callable[[], Awaitable[dict]]) -> CartRead:
        async with self._lock:
            snapshot = self.cart.model_copy(deep=True)
            optimistic(self.cart)
            self.pending += 1
            self._notify()
            try:
                data = await send()
            except TableOrderError as e:
                self.cart = snapshot
                self.error = e
                if isinstance(e, NetworkError):
                    self.failed.append(FailedMutation(label, send, e))
                logger.warning(f"Cart mutation '{label}' rolled back: {e.code}")
                raise
            else:
                self._apply(data)
            finally:
                self.pending -= 1
                self._notify()
            return self.cart

    async def retry_failed(self) -> CartRead:
        """Re-send mutations that were rolled back on network errors, oldest first."""
        while self.failed:
            mutation = self.failed[0]
            async with self._lock:
                self.pending += 1
                self._notify()
                try:
                    data = await mutation.send()
                except TableOrderError as e:
                    mutation.error = e
                    self.error = e
                    if not isinstance(e, NetworkError):
                        # Rejected by the server; retrying again cannot succeed
                        self.failed.pop(0)
                    raise
                else:
                    self.failed.pop(0)
                    self._apply(data)
                finally:
                    self.pending -= 1
                    self._notify()
        return self.cart

    # ---- mutations ----

    async def add_item(
        self,
        menu_item: MenuItemRead,
        selections: CartSelections | None = None,
        quantity: int = 1,
        special_instructions: str | None = None,
    ) -> CartRead:
        """Add a configured item; an identical configuration increments its line."""
        selections = selections or CartSelections()
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if menu_item.availability != Availability.available:
            raise ItemUnavailableError(
                f"\"{menu_item.name}\" is {menu_item.availability.value.lower()}",
                {"menu_item_id": menu_item.id},
            )
        validate_selections(menu_item, selections)

        instructions = _instructions(special_instructions)
        line_id = str(uuid4())

        def optimistic(cart: CartRead) -> None:
            for line in cart.items:
                if (
                    line.menu_item.id == menu_item.id
                    and line.special_instructions == instructions
                    and line.selections.key() == selections.key()
                ):
                    line.quantity += quantity
                    line.line_total = line.unit_price * line.quantity
                    return
            unit_price = resolve_unit_price(menu_item, selections)
            cart.items.append(CartLine(
                id=line_id,
                menu_item=menu_item,
                selections=selections,
                special_instructions=instructions,
                quantity=quantity,
                unit_price=unit_price,
                line_total=unit_price * quantity,
            ))

        body = {
            "menu_item_id": menu_item.id,
            "selections": selections.model_dump(mode="json"),
            "quantity": quantity,
            "special_instructions": instructions,
            "line_id": line_id,
        }
        return await self._mutate(
            f"add {menu_item.name}",
            optimistic,
            lambda: self.api.post("/cart/items", json=body),
        )

    async def update_quantity(self, line_id: str, quantity: int) -> CartRead:
        """Set a line's quantity; zero or below removes the line."""
        if quantity <= 0:
            return await self.remove_item(line_id)

        def optimistic(cart: CartRead) -> None:
            line = next((line for line in cart.items if line.id == line_id), None)
            if line is not None:
                line.quantity = quantity
                line.line_total = line.unit_price * quantity

        return await self._mutate(
            f"update {mask_id(line_id)}",
            optimistic,
            lambda: self.api.patch(f"/cart/items/{line_id}", json={"quantity": quantity}),
        )

    async def remove_item(self, line_id: str) -> CartRead:
        def optimistic(cart: CartRead) -> None:
            cart.items = [line for line in cart.items if line.id != line_id]

        try:
            return await self._mutate(
                f"remove {mask_id(line_id)}",
                optimistic,
                lambda: self.api.delete(f"/cart/items/{line_id}"),
            )
        except NotFoundError:
            # Already gone on the server (another device); take the server's view
            await self.fetch_cart()
            return self.cart

    async def clear_cart(self) -> CartRead:
        def optimistic(cart: CartRead) -> None:
            cart.items = []

        return await self._mutate("clear", optimistic, lambda: self.api.delete("/cart"))

    # ---- checkout hooks ----

    def reset_after_checkout(self) -> None:
        """The server emptied the cart when the order was created."""
        self.cart = CartRead(tax_rate=self.cart.tax_rate, service_charge_rate=self.cart.service_charge_rate)
        self.failed.clear()
        self.error = None
        self.state = CartState.READY
        self._notify()

    def flag_unavailable(self, cart_item_id: str | None = None, menu_item_id: int | None = None) -> None:
        """Mark the offending line(s) after the server reported an unavailable item."""
        for line in self.cart.items:
            if line.id == cart_item_id or (menu_item_id is not None and line.menu_item.id == menu_item_id):
                line.unavailable = True
        self._notify()
