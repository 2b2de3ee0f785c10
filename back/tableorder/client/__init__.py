"""
Customer-side client: the ordering pipeline as seen from the diner's device.
"""
from .api import ApiClient, mask_id
from .cart_store import CartState, CartStore
from .checkout import Checkout
from .order_tracker import OrderTracker
from .payment_tracker import PaymentOutcome, PaymentTracker
from .push import PushChannel, normalize_event
from .session import SessionResolver

__all__ = [
    "ApiClient",
    "CartState",
    "CartStore",
    "Checkout",
    "OrderTracker",
    "PaymentOutcome",
    "PaymentTracker",
    "PushChannel",
    "SessionResolver",
    "mask_id",
    "normalize_event",
]
