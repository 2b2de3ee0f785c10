from sqlmodel import Session, select

from .errors import NotFoundError
from .models import (
    MenuItem,
    MenuItemRead,
    ModifierGroupRead,
    ModifierOptionRead,
    SizeRead,
    ToppingRead,
)
from .pricing import cents_to_money


def menu_item_read(item: MenuItem) -> MenuItemRead:
    """Customer projection of a menu item, prices in dollars."""
    groups = sorted(item.modifier_groups, key=lambda g: (g.sort_order, g.id))
    return MenuItemRead(
        id=item.id,
        name=item.name,
        description=item.description,
        base_price=cents_to_money(item.price_cents),
        image_url=item.image_url,
        category=item.category,
        availability=item.availability,
        sizes=[
            SizeRead(id=s.id, name=s.name, price=cents_to_money(s.price_cents))
            for s in item.sizes
        ],
        toppings=[
            ToppingRead(id=t.id, name=t.name, price=cents_to_money(t.price_cents))
            for t in item.toppings
        ],
        modifier_groups=[
            ModifierGroupRead(
                id=g.id,
                name=g.name,
                required=g.required,
                min_choices=g.min_choices,
                max_choices=g.max_choices,
                options=[
                    ModifierOptionRead(
                        id=o.id, name=o.name, price_delta=cents_to_money(o.price_delta_cents)
                    )
                    for o in g.options
                ],
            )
            for g in groups
        ],
    )


def list_menu(session: Session, tenant_id: int) -> list[MenuItemRead]:
    items = session.exec(
        select(MenuItem)
        .where(MenuItem.tenant_id == tenant_id)
        .order_by(MenuItem.category, MenuItem.name)
    ).all()
    return [menu_item_read(item) for item in items]


def get_menu_item(session: Session, tenant_id: int, menu_item_id: int) -> MenuItem:
    item = session.exec(
        select(MenuItem).where(MenuItem.id == menu_item_id, MenuItem.tenant_id == tenant_id)
    ).first()
    if item is None:
        raise NotFoundError(f"Menu item {menu_item_id} not found", {"menu_item_id": menu_item_id})
    return item
