"""
Pricing engine.

Amounts are ``Decimal`` USD dollars. Intermediate results are never rounded;
``round_money`` / ``CartTotals.rounded`` are applied only when a value is
displayed or persisted (persisted amounts are integer cents, see
``money_to_cents``).
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from .errors import ValidationError
from .models import CartSelections, MenuItemRead

CENT = Decimal("0.01")
ZERO = Decimal("0")


class PricedLine(Protocol):
    menu_item: MenuItemRead
    selections: CartSelections
    quantity: int


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() avoids binary float artifacts (0.1 -> 0.1000000000000000055...)
    return Decimal(str(value))


def cents_to_money(cents: int) -> Decimal:
    return Decimal(cents) / 100


def money_to_cents(amount) -> int:
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_money(amount) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_selections(item: MenuItemRead, selections: CartSelections) -> None:
    """Check a configuration against the item's sizes, toppings and modifier groups.

    Raises ValidationError naming the first problem found.
    """
    if selections.size_id is not None and selections.size_id not in {s.id for s in item.sizes}:
        raise ValidationError(
            f"Size {selections.size_id} is not offered for \"{item.name}\"",
            {"menu_item_id": item.id, "size_id": selections.size_id},
        )

    topping_ids = {t.id for t in item.toppings}
    for topping_id in selections.topping_ids:
        if topping_id not in topping_ids:
            raise ValidationError(
                f"Topping {topping_id} is not offered for \"{item.name}\"",
                {"menu_item_id": item.id, "topping_id": topping_id},
            )

    groups = {g.id: g for g in item.modifier_groups}
    for group_id in selections.modifiers:
        if group_id not in groups:
            raise ValidationError(
                f"Invalid modifier group ID: {group_id}",
                {"menu_item_id": item.id, "group_id": group_id},
            )

    for group in item.modifier_groups:
        chosen = set(selections.modifiers.get(group.id, []))
        if group.required and not chosen:
            raise ValidationError(
                f"Modifier group \"{group.name}\" is required",
                {"menu_item_id": item.id, "group_id": group.id},
            )
        if len(chosen) < group.min_choices:
            raise ValidationError(
                f"Must select at least {group.min_choices} option(s) for \"{group.name}\"",
                {"menu_item_id": item.id, "group_id": group.id},
            )
        if group.max_choices is not None and len(chosen) > group.max_choices:
            raise ValidationError(
                f"Cannot select more than {group.max_choices} option(s) for \"{group.name}\"",
                {"menu_item_id": item.id, "group_id": group.id},
            )
        option_ids = {o.id for o in group.options}
        for option_id in chosen:
            if option_id not in option_ids:
                raise ValidationError(
                    f"Invalid modifier option ID: {option_id}",
                    {"menu_item_id": item.id, "group_id": group.id, "option_id": option_id},
                )


def resolve_unit_price(item: MenuItemRead, selections: CartSelections) -> Decimal:
    """Size price (or base price), plus toppings, plus modifier deltas."""
    price = to_decimal(item.base_price)
    if selections.size_id is not None:
        sizes = {s.id: s for s in item.sizes}
        if selections.size_id not in sizes:
            raise ValidationError(f"Size {selections.size_id} is not offered for \"{item.name}\"")
        price = to_decimal(sizes[selections.size_id].price)

    toppings = {t.id: t for t in item.toppings}
    for topping_id in set(selections.topping_ids):
        if topping_id not in toppings:
            raise ValidationError(f"Topping {topping_id} is not offered for \"{item.name}\"")
        price += to_decimal(toppings[topping_id].price)

    options = {
        (group.id, option.id): option
        for group in item.modifier_groups
        for option in group.options
    }
    for group_id, option_ids in selections.modifiers.items():
        for option_id in set(option_ids):
            option = options.get((group_id, option_id))
            if option is None:
                raise ValidationError(f"Invalid modifier option ID: {option_id}")
            price += to_decimal(option.price_delta)

    return price


def compute_line_total(line: PricedLine) -> Decimal:
    if line.quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    return resolve_unit_price(line.menu_item, line.selections) * line.quantity


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    tax: Decimal
    service_charge: Decimal
    total: Decimal
    tax_rate: Decimal = ZERO
    service_charge_rate: Decimal = ZERO

    def rounded(self) -> "CartTotals":
        """Totals at cent precision; total is the sum of the rounded parts."""
        subtotal = round_money(self.subtotal)
        tax = round_money(self.tax)
        service_charge = round_money(self.service_charge)
        return CartTotals(
            subtotal=subtotal,
            tax=tax,
            service_charge=service_charge,
            total=subtotal + tax + service_charge,
            tax_rate=self.tax_rate,
            service_charge_rate=self.service_charge_rate,
        )


def compute_cart_totals(
    lines: Iterable[PricedLine],
    tax_rate=ZERO,
    service_charge_rate=ZERO,
) -> CartTotals:
    tax_rate = to_decimal(tax_rate)
    service_charge_rate = to_decimal(service_charge_rate)
    subtotal = sum((compute_line_total(line) for line in lines), ZERO)
    tax = subtotal * tax_rate
    service_charge = subtotal * service_charge_rate
    return CartTotals(
        subtotal=subtotal,
        tax=tax,
        service_charge=service_charge,
        total=subtotal + tax + service_charge,
        tax_rate=tax_rate,
        service_charge_rate=service_charge_rate,
    )
