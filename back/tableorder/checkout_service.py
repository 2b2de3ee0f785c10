"""
Checkout Service

Turns the session cart into an immutable Order:
- re-validates availability and modifier rules against the current menu
- freezes line snapshots and rounded totals (integer cents)
- applies an optional promo code
- clears the cart in the same transaction
"""
import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from .cart_service import get_or_create_cart, stored_selections
from .errors import EmptyCartError, ItemUnavailableError, ValidationError
from .menu_service import get_menu_item, menu_item_read
from .models import (
    Availability,
    CartItem,
    CartLine,
    CartSelections,
    CheckoutRequest,
    MenuItemRead,
    Order,
    OrderItem,
    OrderStatusHistory,
    Table,
    TableSession,
    Tenant,
)
from .order_service import publish_order_event
from .pricing import ZERO, compute_cart_totals, money_to_cents, resolve_unit_price, validate_selections
from .promotion_service import redeem, validate_promo
from .realtime import EVENT_NEW_ORDER
from .settings import settings
from .statuses import OrderStatus, PaymentMethod, PaymentStatus, normalize_payment_method

logger = logging.getLogger(__name__)


def generate_order_number(session: Session, tenant_id: int) -> str:
    """Generate order number: ORD-YYYYMMDD-NNNN, sequential per tenant per day"""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    prefix = f"ORD-{today}-"

    statement = (
        select(Order)
        .where(Order.tenant_id == tenant_id)
        .where(Order.order_number.startswith(prefix))
        .order_by(Order.order_number.desc())
    )
    last_order = session.exec(statement).first()

    if last_order:
        try:
            next_seq = int(last_order.order_number.split("-")[-1]) + 1
        except ValueError:
            next_seq = 1
    else:
        next_seq = 1

    return f"{prefix}{next_seq:04d}"


def selections_snapshot(menu: MenuItemRead, selections: CartSelections) -> dict:
    """Names and prices of the chosen options as they were at order time."""
    sizes = {s.id: s for s in menu.sizes}
    toppings = {t.id: t for t in menu.toppings}
    snapshot: dict = {"size": None, "toppings": [], "modifiers": []}
    if selections.size_id is not None:
        size = sizes[selections.size_id]
        snapshot["size"] = {"id": size.id, "name": size.name, "price": str(size.price)}
    for topping_id in sorted(set(selections.topping_ids)):
        topping = toppings[topping_id]
        snapshot["toppings"].append({"id": topping.id, "name": topping.name, "price": str(topping.price)})
    for group in menu.modifier_groups:
        chosen = set(selections.modifiers.get(group.id, []))
        if not chosen:
            continue
        snapshot["modifiers"].append({
            "group_id": group.id,
            "group": group.name,
            "options": [
                {"id": o.id, "name": o.name, "price_delta": str(o.price_delta)}
                for o in group.options
                if o.id in chosen
            ],
        })
    return snapshot


def _check_payment_method(method: PaymentMethod, tenant: Tenant) -> None:
    if method == PaymentMethod.SEPAY_QR and not tenant.sepay_configured:
        raise ValidationError("Bank transfer payments are not available at this restaurant")
    if method == PaymentMethod.CARD_ONLINE and not (tenant.stripe_secret_key or settings.stripe_secret_key):
        raise ValidationError("Card payments are not available at this restaurant")


def submit_order(session: Session, table_session: TableSession, request: CheckoutRequest) -> Order:
    if request.table_id != table_session.table_id:
        raise ValidationError(
            "Order table does not match the current table session",
            {"table_id": request.table_id},
        )
    try:
        method = normalize_payment_method(request.payment_method)
    except ValueError:
        raise ValidationError(
            f"Unknown payment method: {request.payment_method}",
            {"payment_method": request.payment_method},
        )

    tenant = session.get(Tenant, table_session.tenant_id)
    table = session.get(Table, table_session.table_id)
    _check_payment_method(method, tenant)

    cart = get_or_create_cart(session, table_session)
    cart_items = list(session.exec(
        select(CartItem).where(CartItem.cart_id == cart.id).order_by(CartItem.created_at)
    ).all())
    if not cart_items:
        raise EmptyCartError()

    # Re-validate every line against the menu as it is now
    lines: list[CartLine] = []
    for cart_item in cart_items:
        item = get_menu_item(session, tenant.id, cart_item.menu_item_id)
        if item.availability != Availability.available:
            raise ItemUnavailableError(
                f"\"{item.name}\" is no longer available",
                {"cart_item_id": cart_item.id, "menu_item_id": item.id},
            )
        menu = menu_item_read(item)
        selections = stored_selections(cart_item)
        try:
            validate_selections(menu, selections)
        except ValidationError as e:
            e.details = {**e.details, "cart_item_id": cart_item.id}
            raise
        unit_price = resolve_unit_price(menu, selections)
        lines.append(CartLine(
            id=cart_item.id,
            menu_item=menu,
            selections=selections,
            special_instructions=cart_item.special_instructions,
            quantity=cart_item.quantity,
            unit_price=unit_price,
            line_total=unit_price * cart_item.quantity,
        ))

    totals = compute_cart_totals(lines, tenant.tax_rate, tenant.service_charge_rate).rounded()

    discount = ZERO
    promo_code = None
    if request.promo_code:
        promo = validate_promo(session, tenant.id, request.promo_code, totals.subtotal)
        if promo.valid:
            discount = promo.discount_amount
            promo_code = promo.code
        else:
            logger.info(f"Promo code not applied at checkout: {promo.error}")

    order = Order(
        tenant_id=tenant.id,
        order_number=generate_order_number(session, tenant.id),
        table_id=table.id,
        table_number=table.table_number,
        session_id=table_session.id,
        status=OrderStatus.PENDING,
        customer_name=request.customer_name,
        notes=request.notes,
        subtotal_cents=money_to_cents(totals.subtotal),
        tax_cents=money_to_cents(totals.tax),
        service_charge_cents=money_to_cents(totals.service_charge),
        discount_cents=money_to_cents(discount),
        total_cents=money_to_cents(totals.total - discount),
        promo_code=promo_code,
        payment_method=method,
        payment_status=PaymentStatus.PENDING,
        estimated_ready_minutes=tenant.estimated_prep_minutes,
    )
    session.add(order)
    session.flush()

    for line in lines:
        session.add(OrderItem(
            order_id=order.id,
            menu_item_id=line.menu_item.id,
            name=line.menu_item.name,
            unit_price_cents=money_to_cents(line.unit_price),
            quantity=line.quantity,
            line_total_cents=money_to_cents(line.line_total),
            selections=selections_snapshot(line.menu_item, line.selections),
            special_instructions=line.special_instructions,
        ))
    session.add(OrderStatusHistory(order_id=order.id, status=OrderStatus.PENDING, notes="Order placed"))

    if promo_code:
        redeem(session, tenant.id, promo_code)
    for cart_item in cart_items:
        session.delete(cart_item)

    session.commit()
    session.refresh(order)
    logger.info(
        f"Order {order.order_number} placed at table {table.table_number} "
        f"({len(lines)} line(s), {method.value})"
    )
    publish_order_event(EVENT_NEW_ORDER, order)
    return order
