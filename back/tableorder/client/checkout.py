import logging
from decimal import Decimal

from ..errors import EmptyCartError, ItemUnavailableError, ValidationError
from ..models import OrderRead, PromoValidation
from ..statuses import PaymentMethod, normalize_payment_method, requires_online_payment
from .api import ApiClient
from .cart_store import CartStore

logger = logging.getLogger(__name__)


class Checkout:
    def __init__(self, api: ApiClient, cart: CartStore):
        self.api = api
        self.cart = cart
        self.last_order: OrderRead | None = None

    async def validate_promo(self, code: str, subtotal: Decimal | None = None) -> PromoValidation:
        """Check a code without committing to it. A bad code is a result, not an error."""
        subtotal = self.cart.subtotal if subtotal is None else subtotal
        try:
            data = await self.api.post(
                "/checkout/validate-promo",
                json={"code": code, "subtotal": str(subtotal)},
            )
        except ValidationError as e:
            return PromoValidation(valid=False, error=e.message)
        return PromoValidation.model_validate(data)

    async def submit_order(
        self,
        table_id: int,
        customer_name: str | None = None,
        notes: str | None = None,
        payment_method: "str | PaymentMethod | None" = PaymentMethod.BILL_TO_TABLE,
        promo_code: str | None = None,
    ) -> OrderRead:
        """Create the order from the current cart.

        The cart is cleared only when the order was created; any failure leaves
        it as it was.
        """
        await self.cart.settled()
        if not self.cart.items:
            raise EmptyCartError()
        blocked = [line for line in self.cart.items if line.unavailable]
        if blocked:
            raise ItemUnavailableError(
                f"\"{blocked[0].menu_item.name}\" is no longer available",
                {"cart_item_id": blocked[0].id, "menu_item_id": blocked[0].menu_item.id},
            )
        try:
            method = normalize_payment_method(payment_method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {payment_method}")

        try:
            data = await self.api.post("/checkout", json={
                "table_id": table_id,
                "customer_name": customer_name,
                "notes": notes,
                "payment_method": method.value,
                "promo_code": promo_code,
            })
        except ItemUnavailableError as e:
            self.cart.flag_unavailable(e.details.get("cart_item_id"), e.details.get("menu_item_id"))
            raise

        order = OrderRead.model_validate(data)
        self.cart.reset_after_checkout()
        self.last_order = order
        logger.info(f"Order {order.order_number} submitted ({order.payment_method.value})")
        return order

    @staticmethod
    def needs_payment(order: OrderRead) -> bool:
        """SEPAY_QR and CARD_ONLINE orders go through payment tracking first."""
        return requires_online_payment(order.payment_method)
