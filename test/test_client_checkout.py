"""
Client checkout: guards before submission and cart handling around it.
"""
from decimal import Decimal

import pytest

from tableorder.client import CartStore, Checkout, SessionResolver
from tableorder.errors import EmptyCartError, ItemUnavailableError
from tableorder.models import Availability, CartSelections, MenuItem
from tableorder.statuses import PaymentMethod

pytestmark = pytest.mark.anyio


@pytest.fixture
async def session(api, seed):
    return await SessionResolver(api).resolve_qr_token(seed.qr_token)


@pytest.fixture
async def cart(api, session):
    store = CartStore(api)
    await store.fetch_cart()
    return store


@pytest.fixture
def checkout(api, cart):
    return Checkout(api, cart)


async def test_empty_cart_is_rejected_without_a_request(checkout, session, transport):
    before = len(transport.requests)
    with pytest.raises(EmptyCartError):
        await checkout.submit_order(session.table_id)
    assert len(transport.requests) == before


async def test_submit_creates_order_and_clears_cart(checkout, cart, menu, seed, session):
    await cart.add_item(menu["Margherita"], CartSelections(size_id=seed.large_id, topping_ids=[seed.cheese_id]), quantity=2)

    order = await checkout.submit_order(session.table_id, customer_name="Lan", notes="Window seat")

    assert order.total == Decimal("37.84")
    assert order.customer_name == "Lan"
    assert cart.items == []
    assert checkout.last_order == order
    assert not Checkout.needs_payment(order)


async def test_legacy_method_name_is_normalized(checkout, cart, menu, session):
    await cart.add_item(menu["Margherita"])
    order = await checkout.submit_order(session.table_id, payment_method="card")
    assert order.payment_method == PaymentMethod.CARD_ONLINE
    assert Checkout.needs_payment(order)


async def test_unavailable_item_keeps_cart_and_flags_line(checkout, cart, db, menu, seed, session):
    await cart.add_item(menu["Margherita"])
    await cart.add_item(menu["Pho Bo"], CartSelections(modifiers={seed.broth_id: [seed.clear_broth_id]}))
    item = db.get(MenuItem, seed.pizza_id)
    item.availability = Availability.sold_out
    db.add(item)
    db.commit()

    with pytest.raises(ItemUnavailableError):
        await checkout.submit_order(session.table_id)

    assert len(cart.items) == 2
    flagged = [line.menu_item.name for line in cart.items if line.unavailable]
    assert flagged == ["Margherita"]

    # Already flagged locally, so the next attempt fails before any request
    with pytest.raises(ItemUnavailableError):
        await checkout.submit_order(session.table_id)


async def test_promo_validation_returns_a_result(checkout, cart, menu, seed):
    await cart.add_item(menu["Margherita"], CartSelections(size_id=seed.large_id, topping_ids=[seed.cheese_id]), quantity=2)

    good = await checkout.validate_promo("welcome10")
    assert good.valid
    assert good.discount_amount == Decimal("3.29")

    bad = await checkout.validate_promo("NOPE")
    assert not bad.valid
    assert bad.error == "Invalid promo code"


async def test_submit_with_promo(checkout, cart, menu, seed, session):
    await cart.add_item(menu["Margherita"], CartSelections(size_id=seed.large_id, topping_ids=[seed.cheese_id]), quantity=2)
    order = await checkout.submit_order(session.table_id, promo_code="WELCOME10")
    assert order.discount == Decimal("3.29")
    assert order.total == Decimal("34.55")
