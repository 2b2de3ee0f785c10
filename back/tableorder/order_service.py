"""
Order Service

Order reads for diners and staff, the tracking projection, and the status
transitions driven by staff and kitchen actions.
"""
import logging
from datetime import datetime

from sqlmodel import Session, select

from .errors import NotFoundError, ValidationError
from .models import (
    ItemTracking,
    Order,
    OrderItem,
    OrderItemRead,
    OrderRead,
    OrderStatusHistory,
    OrderTracking,
    Payment,
    TableSession,
    User,
    as_utc,
    utcnow,
)
from .pricing import cents_to_money
from .realtime import (
    EVENT_ORDER_STATUS_CHANGED,
    EVENT_PAYMENT_COMPLETED,
    publish_order_update,
)
from .statuses import (
    ItemPrepStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    STATUS_MESSAGES,
    STATUS_TIMESTAMP_FIELDS,
    TERMINAL_ORDER_STATUSES,
    build_timeline,
    can_transition,
    derive_item_status,
    normalize_order_status,
    requires_online_payment,
)

logger = logging.getLogger(__name__)

CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.RECEIVED})
# Once here the food is on its way; nothing is left to wait for
NO_WAIT_STATUSES = frozenset({OrderStatus.READY, OrderStatus.SERVED}) | TERMINAL_ORDER_STATUSES


def get_order_items(session: Session, order_id: int) -> list[OrderItem]:
    return list(session.exec(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    ).all())


def order_item_read(item: OrderItem) -> OrderItemRead:
    return OrderItemRead(
        id=item.id,
        menu_item_id=item.menu_item_id,
        name=item.name,
        unit_price=cents_to_money(item.unit_price_cents),
        quantity=item.quantity,
        line_total=cents_to_money(item.line_total_cents),
        selections=item.selections or {},
        special_instructions=item.special_instructions,
        status=derive_item_status(item.started_at, item.prepared_at, item.served_at),
        prepared_at=as_utc(item.prepared_at),
    )


def order_read(session: Session, order: Order) -> OrderRead:
    return OrderRead(
        id=order.id,
        order_number=order.order_number,
        table_id=order.table_id,
        table_number=order.table_number,
        status=order.status,
        customer_name=order.customer_name,
        notes=order.notes,
        subtotal=cents_to_money(order.subtotal_cents),
        tax=cents_to_money(order.tax_cents),
        service_charge=cents_to_money(order.service_charge_cents),
        discount=cents_to_money(order.discount_cents),
        total=cents_to_money(order.total_cents),
        promo_code=order.promo_code,
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        created_at=as_utc(order.created_at),
        estimated_ready_minutes=order.estimated_ready_minutes,
        items=[order_item_read(item) for item in get_order_items(session, order.id)],
    )


def order_event(event_type: str, order: Order, **extra) -> dict:
    event = {
        "type": event_type,
        "order_id": order.id,
        "order_number": order.order_number,
        "table_id": order.table_id,
        "table_number": order.table_number,
        "status": OrderStatus(order.status).value,
        "payment_status": PaymentStatus(order.payment_status).value,
    }
    event.update(extra)
    return event


def publish_order_event(event_type: str, order: Order, **extra) -> None:
    publish_order_update(order.tenant_id, order_event(event_type, order, **extra), table_id=order.table_id)


def elapsed_minutes(order: Order, now: datetime) -> int:
    return max(0, int((now - as_utc(order.created_at)).total_seconds() // 60))


def estimated_time_remaining(order: Order, now: datetime) -> int | None:
    if order.estimated_ready_minutes is None:
        return None
    if order.status in NO_WAIT_STATUSES:
        return 0
    return max(0, order.estimated_ready_minutes - elapsed_minutes(order, now))


def build_tracking(session: Session, order: Order, now: datetime | None = None) -> OrderTracking:
    now = now or utcnow()
    status = OrderStatus(order.status)
    timestamps = {
        checkpoint: as_utc(getattr(order, field))
        for checkpoint, field in STATUS_TIMESTAMP_FIELDS.items()
    }
    items = get_order_items(session, order.id)
    return OrderTracking(
        order_id=order.id,
        order_number=order.order_number,
        table_number=order.table_number,
        current_status=status,
        current_status_message=STATUS_MESSAGES[status],
        payment_status=order.payment_status,
        timeline=build_timeline(status, timestamps),
        items=[
            ItemTracking(
                id=item.id,
                name=item.name,
                quantity=item.quantity,
                status=derive_item_status(item.started_at, item.prepared_at, item.served_at),
                prepared_at=as_utc(item.prepared_at),
            )
            for item in items
        ],
        estimated_time_remaining=estimated_time_remaining(order, now),
        elapsed_minutes=elapsed_minutes(order, now),
        created_at=as_utc(order.created_at),
    )


# ============ CUSTOMER ============

def list_session_orders(session: Session, table_session: TableSession) -> list[Order]:
    return list(session.exec(
        select(Order)
        .where(Order.session_id == table_session.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    ).all())


def get_session_order(session: Session, table_session: TableSession, order_id: int) -> Order:
    order = session.exec(
        select(Order).where(Order.id == order_id, Order.session_id == table_session.id)
    ).first()
    if order is None:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


def _record_status(
    session: Session,
    order: Order,
    status: OrderStatus,
    user_id: int | None = None,
    notes: str | None = None,
) -> None:
    """Move the order to `status`, stamp its timestamp column and append history."""
    now = utcnow()
    order.status = status
    field = STATUS_TIMESTAMP_FIELDS[status]
    if getattr(order, field) is None:
        setattr(order, field, now)
    session.add(order)
    session.add(OrderStatusHistory(
        order_id=order.id,
        status=status,
        notes=notes,
        changed_by_user_id=user_id,
        created_at=now,
    ))


def _fail_open_payments(session: Session, order: Order, reason: str) -> None:
    payments = session.exec(
        select(Payment).where(
            Payment.order_id == order.id,
            Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING]),
        )
    ).all()
    for payment in payments:
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = reason
        session.add(payment)


def cancel_by_customer(
    session: Session,
    table_session: TableSession,
    order_id: int,
    reason: str | None = None,
) -> Order:
    order = get_session_order(session, table_session, order_id)
    if order.status not in CUSTOMER_CANCELLABLE:
        raise ValidationError(
            f"Order can no longer be cancelled (status {OrderStatus(order.status).value})",
            {"order_id": order.id, "status": OrderStatus(order.status).value},
        )
    order.cancelled_by = "customer"
    order.cancel_reason = reason
    _record_status(session, order, OrderStatus.CANCELLED, notes=reason or "Cancelled by customer")
    _fail_open_payments(session, order, "Order cancelled")
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.order_number} cancelled by customer")
    publish_order_event(EVENT_ORDER_STATUS_CHANGED, order, cancelled_by="customer")
    return order


# ============ STAFF ============

def list_tenant_orders(session: Session, user: User, include_closed: bool = False) -> list[Order]:
    statement = select(Order).where(Order.tenant_id == user.tenant_id)
    if not include_closed:
        statement = statement.where(Order.status.not_in(list(TERMINAL_ORDER_STATUSES)))
    return list(session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc())).all())


def get_tenant_order(session: Session, user: User, order_id: int) -> Order:
    order = session.exec(
        select(Order).where(Order.id == order_id, Order.tenant_id == user.tenant_id)
    ).first()
    if order is None:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


def change_status(
    session: Session,
    user: User,
    order_id: int,
    raw_status: str,
    reason: str | None = None,
) -> Order:
    """Staff status transition; legacy Title-Case names are accepted."""
    order = get_tenant_order(session, user, order_id)
    try:
        new_status = normalize_order_status(raw_status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {raw_status}", {"status": raw_status})

    current = OrderStatus(order.status)
    if not can_transition(current, new_status):
        raise ValidationError(
            f"Cannot change order status from {current.value} to {new_status.value}",
            {"from": current.value, "to": new_status.value},
        )

    if (
        new_status == OrderStatus.RECEIVED
        and requires_online_payment(order.payment_method)
        and order.payment_status != PaymentStatus.COMPLETED
    ):
        raise ValidationError(
            "Order is awaiting online payment",
            {"order_id": order.id, "payment_status": PaymentStatus(order.payment_status).value},
        )

    if new_status == OrderStatus.CANCELLED:
        order.cancelled_by = "staff"
        order.cancel_reason = reason
        _fail_open_payments(session, order, "Order cancelled")

    _record_status(session, order, new_status, user_id=user.id, notes=reason)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.order_number}: {current.value} -> {new_status.value} by user {user.id}")
    publish_order_event(EVENT_ORDER_STATUS_CHANGED, order, previous_status=current.value)
    return order


def update_item_status(
    session: Session,
    user: User,
    order_id: int,
    item_id: int,
    status: ItemPrepStatus,
) -> OrderItem:
    """Kitchen progress of one item; earlier stages are stamped when skipped."""
    order = get_tenant_order(session, user, order_id)
    if order.status in TERMINAL_ORDER_STATUSES:
        raise ValidationError("Order is closed", {"order_id": order.id})
    item = session.exec(
        select(OrderItem).where(OrderItem.id == item_id, OrderItem.order_id == order.id)
    ).first()
    if item is None:
        raise NotFoundError("Order item not found", {"order_item_id": item_id})

    now = utcnow()
    if status == ItemPrepStatus.QUEUED:
        item.started_at = item.prepared_at = item.served_at = None
    else:
        item.started_at = item.started_at or now
        if status in (ItemPrepStatus.READY, ItemPrepStatus.SERVED):
            item.prepared_at = item.prepared_at or now
        else:
            item.prepared_at = None
        item.served_at = (item.served_at or now) if status == ItemPrepStatus.SERVED else None
    session.add(item)
    session.commit()
    session.refresh(item)
    publish_order_event(
        EVENT_ORDER_STATUS_CHANGED,
        order,
        item_id=item.id,
        item_status=derive_item_status(item.started_at, item.prepared_at, item.served_at).value,
    )
    return item


def mark_paid(session: Session, user: User, order_id: int, method: str) -> Order:
    """Record offline settlement (cash, terminal) of a BILL_TO_TABLE order."""
    order = get_tenant_order(session, user, order_id)
    if order.payment_method != PaymentMethod.BILL_TO_TABLE:
        raise ValidationError(
            "Order is paid online; it cannot be marked as paid manually",
            {"payment_method": PaymentMethod(order.payment_method).value},
        )
    if order.status == OrderStatus.CANCELLED:
        raise ValidationError("Order is cancelled", {"order_id": order.id})
    if order.payment_status == PaymentStatus.COMPLETED:
        raise ValidationError("Order is already paid", {"order_id": order.id})

    order.payment_status = PaymentStatus.COMPLETED
    order.paid_at = utcnow()
    session.add(order)
    session.add(OrderStatusHistory(
        order_id=order.id,
        status=order.status,
        notes=f"Paid ({method})",
        changed_by_user_id=user.id,
    ))
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.order_number} marked as paid ({method}) by user {user.id}")
    publish_order_event(EVENT_PAYMENT_COMPLETED, order, settled_by=method)
    return order
