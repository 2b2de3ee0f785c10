"""
Order, payment and item status vocabularies.

The API and the push channel have carried two spellings of the order
lifecycle over time: the current UPPERCASE one (PENDING, RECEIVED, ...) and a
legacy Title-Case one (Pending, Accepted, ...). Every ingestion point calls the
normalize_* helpers below so the rest of the code only ever sees the canonical
enums.
"""
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    RECEIVED = "RECEIVED"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class PaymentMethod(str, Enum):
    BILL_TO_TABLE = "BILL_TO_TABLE"
    SEPAY_QR = "SEPAY_QR"
    CARD_ONLINE = "CARD_ONLINE"


class ItemPrepStatus(str, Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"


LEGACY_ORDER_STATUSES: dict[str, OrderStatus] = {
    "Pending": OrderStatus.PENDING,
    "Accepted": OrderStatus.RECEIVED,
    "Preparing": OrderStatus.PREPARING,
    "Ready": OrderStatus.READY,
    "Served": OrderStatus.SERVED,
    "Completed": OrderStatus.COMPLETED,
    "Cancelled": OrderStatus.CANCELLED,
}

LEGACY_PAYMENT_STATUSES: dict[str, PaymentStatus] = {
    "Unpaid": PaymentStatus.PENDING,
    "Paid": PaymentStatus.COMPLETED,
    "Failed": PaymentStatus.FAILED,
}

LEGACY_PAYMENT_METHODS: dict[str, PaymentMethod] = {
    "card": PaymentMethod.CARD_ONLINE,
    "counter": PaymentMethod.BILL_TO_TABLE,
    "cash": PaymentMethod.BILL_TO_TABLE,
}

# Canonical lifecycle order; CANCELLED sits outside the timeline
ORDER_TIMELINE: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.RECEIVED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.SERVED,
    OrderStatus.COMPLETED,
)

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

TIMELINE_LABELS: dict[OrderStatus, tuple[str, str]] = {
    OrderStatus.PENDING: ("Pending", "Your order is waiting for confirmation"),
    OrderStatus.RECEIVED: ("Accepted", "Your order has been accepted by the restaurant"),
    OrderStatus.PREPARING: ("Preparing", "Your order is being prepared by our kitchen"),
    OrderStatus.READY: ("Ready", "Your order is ready to be served"),
    OrderStatus.SERVED: ("Served", "Your order has been served. Enjoy your meal!"),
    OrderStatus.COMPLETED: ("Completed", "Your order is complete. Thank you!"),
}

STATUS_MESSAGES: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Waiting for confirmation",
    OrderStatus.RECEIVED: "Order confirmed",
    OrderStatus.PREPARING: "Being prepared",
    OrderStatus.READY: "Ready to serve",
    OrderStatus.SERVED: "Served - Enjoy!",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.CANCELLED: "Cancelled",
}

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.RECEIVED, OrderStatus.CANCELLED}),
    OrderStatus.RECEIVED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.SERVED, OrderStatus.CANCELLED}),
    OrderStatus.SERVED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Column on Order stamped when the status is entered
STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "created_at",
    OrderStatus.RECEIVED: "received_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.SERVED: "served_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def normalize_order_status(raw: "str | OrderStatus") -> OrderStatus:
    """Map either vocabulary onto the canonical OrderStatus.

    Raises ValueError for anything that is neither.
    """
    if isinstance(raw, OrderStatus):
        return raw
    value = str(raw).strip()
    if value in LEGACY_ORDER_STATUSES:
        return LEGACY_ORDER_STATUSES[value]
    return OrderStatus(value.upper())


def normalize_payment_status(raw: "str | PaymentStatus") -> PaymentStatus:
    if isinstance(raw, PaymentStatus):
        return raw
    value = str(raw).strip()
    if value in LEGACY_PAYMENT_STATUSES:
        return LEGACY_PAYMENT_STATUSES[value]
    return PaymentStatus(value.upper())


def normalize_payment_method(raw: "str | PaymentMethod | None") -> PaymentMethod:
    if raw is None:
        return PaymentMethod.BILL_TO_TABLE
    if isinstance(raw, PaymentMethod):
        return raw
    value = str(raw).strip()
    if value.lower() in LEGACY_PAYMENT_METHODS:
        return LEGACY_PAYMENT_METHODS[value.lower()]
    return PaymentMethod(value.upper())


def is_terminal(status: "str | OrderStatus") -> bool:
    return normalize_order_status(status) in TERMINAL_ORDER_STATUSES


def timeline_position(status: "str | OrderStatus") -> int | None:
    """Index on the canonical timeline, None for CANCELLED."""
    normalized = normalize_order_status(status)
    if normalized not in ORDER_TIMELINE:
        return None
    return ORDER_TIMELINE.index(normalized)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def requires_online_payment(method: "str | PaymentMethod | None") -> bool:
    return normalize_payment_method(method) != PaymentMethod.BILL_TO_TABLE


def derive_item_status(
    started_at: datetime | None,
    prepared_at: datetime | None,
    served_at: datetime | None,
) -> ItemPrepStatus:
    """Per-item preparation status, derived only from the item's own timestamps."""
    if served_at is not None:
        return ItemPrepStatus.SERVED
    if prepared_at is not None:
        return ItemPrepStatus.READY
    if started_at is not None:
        return ItemPrepStatus.PREPARING
    return ItemPrepStatus.QUEUED


def build_timeline(
    status: OrderStatus,
    timestamps: dict[OrderStatus, datetime | None],
) -> list[dict]:
    """Checkpoints PENDING..COMPLETED with `completed` set once a timestamp exists.

    Orders that reached a later stage without stamping the earlier ones (seeded
    or manually repaired data) have the gaps backfilled with the creation time so
    the timeline never shows a later checkpoint done and an earlier one open.
    """
    created_at = timestamps.get(OrderStatus.PENDING)
    reached = timeline_position(status)
    timeline = []
    for index, checkpoint in enumerate(ORDER_TIMELINE):
        stamp = timestamps.get(checkpoint)
        if stamp is None and reached is not None and index <= reached:
            stamp = created_at
        label, description = TIMELINE_LABELS[checkpoint]
        timeline.append({
            "status": checkpoint.value,
            "label": label,
            "description": description,
            "timestamp": stamp.isoformat() if stamp else None,
            "completed": stamp is not None,
        })
    return timeline
