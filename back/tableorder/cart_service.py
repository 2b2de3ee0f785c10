"""
Server-side cart, one per table session.

The cart stores only references and selections; prices are resolved from the
current menu on every read so the totals are always authoritative.
"""
import logging
from datetime import timedelta

from sqlmodel import Session, select

from .errors import ItemUnavailableError, NotFoundError, ValidationError
from .menu_service import get_menu_item, menu_item_read
from .models import (
    AddCartItemRequest,
    Availability,
    Cart,
    CartItem,
    CartLine,
    CartRead,
    CartSelections,
    MenuItemRead,
    TableSession,
    Tenant,
    UpdateCartItemRequest,
    as_utc,
    new_id,
    utcnow,
)
from .pricing import compute_cart_totals, resolve_unit_price, validate_selections
from .settings import settings

logger = logging.getLogger(__name__)


def normalize_instructions(text: str | None) -> str | None:
    if text is None:
        return None
    text = text.strip()
    return text or None


def stored_selections(item: CartItem) -> CartSelections:
    return CartSelections(
        size_id=item.size_id,
        topping_ids=list(item.topping_ids or []),
        modifiers={int(group_id): list(option_ids) for group_id, option_ids in (item.modifiers or {}).items()},
    )


def sanitize_selections(menu: MenuItemRead, selections: CartSelections) -> tuple[CartSelections, bool]:
    """Drop selections the menu no longer offers. Returns (selections, changed)."""
    size_ids = {s.id for s in menu.sizes}
    topping_ids = {t.id for t in menu.toppings}
    options = {g.id: {o.id for o in g.options} for g in menu.modifier_groups}

    size_id = selections.size_id if selections.size_id in size_ids else None
    toppings = [t for t in selections.topping_ids if t in topping_ids]
    modifiers = {
        group_id: [o for o in option_ids if o in options[group_id]]
        for group_id, option_ids in selections.modifiers.items()
        if group_id in options
    }
    cleaned = CartSelections(size_id=size_id, topping_ids=toppings, modifiers=modifiers)
    return cleaned, cleaned.key() != selections.key()


def get_or_create_cart(session: Session, table_session: TableSession) -> Cart:
    now = utcnow()
    cart = session.exec(select(Cart).where(Cart.session_id == table_session.id)).first()
    if cart is None:
        cart = Cart(
            tenant_id=table_session.tenant_id,
            table_id=table_session.table_id,
            session_id=table_session.id,
            expires_at=now + timedelta(hours=settings.cart_expiry_hours),
        )
        session.add(cart)
        session.commit()
        session.refresh(cart)
    elif as_utc(cart.expires_at) <= now:
        logger.info(f"Cart {cart.id} expired, dropping its items")
        for item in _cart_items(session, cart):
            session.delete(item)
        cart.expires_at = now + timedelta(hours=settings.cart_expiry_hours)
        session.add(cart)
        session.commit()
        session.refresh(cart)
    return cart


def _cart_items(session: Session, cart: Cart) -> list[CartItem]:
    return list(session.exec(
        select(CartItem).where(CartItem.cart_id == cart.id).order_by(CartItem.created_at)
    ).all())


def _touch(cart: Cart) -> None:
    cart.expires_at = utcnow() + timedelta(hours=settings.cart_expiry_hours)


def build_cart_read(session: Session, cart: Cart) -> CartRead:
    tenant = session.get(Tenant, cart.tenant_id)
    lines = []
    for item in _cart_items(session, cart):
        menu = menu_item_read(get_menu_item(session, cart.tenant_id, item.menu_item_id))
        selections, changed = sanitize_selections(menu, stored_selections(item))
        unit_price = resolve_unit_price(menu, selections)
        lines.append(CartLine(
            id=item.id,
            menu_item=menu,
            selections=selections,
            special_instructions=item.special_instructions,
            quantity=item.quantity,
            unit_price=unit_price,
            line_total=unit_price * item.quantity,
            unavailable=changed or menu.availability != Availability.available,
        ))

    totals = compute_cart_totals(lines, tenant.tax_rate, tenant.service_charge_rate)
    return CartRead(
        items=lines,
        subtotal=totals.subtotal,
        tax=totals.tax,
        tax_rate=totals.tax_rate,
        service_charge=totals.service_charge,
        service_charge_rate=totals.service_charge_rate,
        total=totals.total,
        item_count=sum(line.quantity for line in lines),
    )


def get_cart(session: Session, table_session: TableSession) -> CartRead:
    return build_cart_read(session, get_or_create_cart(session, table_session))


def add_item(session: Session, table_session: TableSession, request: AddCartItemRequest) -> CartRead:
    """Add a configured item; an identical configuration merges into its line.

    A request whose line_id was already applied to this cart is a resend after
    a lost response; the cart is returned unchanged.
    """
    if request.quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    cart = get_or_create_cart(session, table_session)
    lines = _cart_items(session, cart)
    if request.line_id and any(
        request.line_id in (line.id, line.last_request_id) for line in lines
    ):
        logger.info(f"Cart {cart.id}: add {request.line_id} already applied")
        return build_cart_read(session, cart)

    item = get_menu_item(session, table_session.tenant_id, request.menu_item_id)
    if item.availability != Availability.available:
        raise ItemUnavailableError(
            f"\"{item.name}\" is {item.availability.value.lower()}",
            {"menu_item_id": item.id},
        )
    validate_selections(menu_item_read(item), request.selections)

    instructions = normalize_instructions(request.special_instructions)
    key = request.selections.key()

    existing = None
    for line in lines:
        if (
            line.menu_item_id == item.id
            and line.special_instructions == instructions
            and stored_selections(line).key() == key
        ):
            existing = line
            break

    if existing is not None:
        existing.quantity += request.quantity
        existing.last_request_id = request.line_id
        session.add(existing)
    else:
        line_id = request.line_id
        if not line_id or session.get(CartItem, line_id) is not None:
            line_id = new_id()
        session.add(CartItem(
            id=line_id,
            cart_id=cart.id,
            menu_item_id=item.id,
            quantity=request.quantity,
            special_instructions=instructions,
            size_id=request.selections.size_id,
            topping_ids=sorted(set(request.selections.topping_ids)),
            modifiers={
                str(group_id): sorted(set(option_ids))
                for group_id, option_ids in request.selections.modifiers.items()
                if option_ids
            },
        ))

    _touch(cart)
    session.add(cart)
    session.commit()
    return build_cart_read(session, cart)


def _get_line(session: Session, cart: Cart, item_id: str) -> CartItem:
    line = session.exec(
        select(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart.id)
    ).first()
    if line is None:
        raise NotFoundError("Cart item not found", {"cart_item_id": item_id})
    return line


def update_item(
    session: Session,
    table_session: TableSession,
    item_id: str,
    request: UpdateCartItemRequest,
) -> CartRead:
    """Set a line's quantity; zero or less removes the line."""
    cart = get_or_create_cart(session, table_session)
    line = _get_line(session, cart, item_id)
    if request.quantity <= 0:
        session.delete(line)
    else:
        line.quantity = request.quantity
        if request.special_instructions is not None:
            line.special_instructions = normalize_instructions(request.special_instructions)
        session.add(line)
    _touch(cart)
    session.add(cart)
    session.commit()
    return build_cart_read(session, cart)


def remove_item(session: Session, table_session: TableSession, item_id: str) -> CartRead:
    cart = get_or_create_cart(session, table_session)
    session.delete(_get_line(session, cart, item_id))
    _touch(cart)
    session.add(cart)
    session.commit()
    return build_cart_read(session, cart)


def clear_cart(session: Session, table_session: TableSession, commit: bool = True) -> None:
    cart = session.exec(select(Cart).where(Cart.session_id == table_session.id)).first()
    if cart is None:
        return
    for item in _cart_items(session, cart):
        session.delete(item)
    if commit:
        session.commit()
