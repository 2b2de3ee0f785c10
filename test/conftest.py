import os

# Must be set before tableorder.settings is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SEPAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["FRONTEND_URL"] = "http://frontend.test"

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from tableorder import models
from tableorder.client import ApiClient, CartStore, Checkout, SessionResolver
from tableorder.db import engine, get_session
from tableorder.main import app
from tableorder.menu_service import list_menu
from tableorder.security import create_access_token, get_password_hash

STAFF_PASSWORD = "secret123"
STAFF_PASSWORD_HASH = get_password_hash(STAFF_PASSWORD)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def seed(db):
    """One restaurant, one table, a small menu, promotions and staff."""
    now = models.utcnow()
    tenant = models.Tenant(
        name="Pho House",
        tax_rate=Decimal("0.10"),
        service_charge_rate=Decimal("0.05"),
        estimated_prep_minutes=20,
        stripe_secret_key="sk_test_tenant",
        sepay_bank_code="MBBank",
        sepay_account_number="0123456789",
        sepay_account_name="PHO HOUSE",
    )
    db.add(tenant)
    db.commit()

    table = models.Table(tenant_id=tenant.id, table_number="T5")
    other_table = models.Table(tenant_id=tenant.id, table_number="T6")
    db.add(table)
    db.add(other_table)

    pizza = models.MenuItem(tenant_id=tenant.id, name="Margherita", price_cents=1295, category="Pizza")
    pho = models.MenuItem(tenant_id=tenant.id, name="Pho Bo", price_cents=950, category="Soup")
    lemonade = models.MenuItem(
        tenant_id=tenant.id,
        name="Lemonade",
        price_cents=350,
        category="Drinks",
        availability=models.Availability.sold_out,
    )
    db.add(pizza)
    db.add(pho)
    db.add(lemonade)
    db.commit()

    regular = models.MenuItemSize(menu_item_id=pizza.id, name="Regular", price_cents=1295)
    large = models.MenuItemSize(menu_item_id=pizza.id, name="Large", price_cents=1495)
    cheese = models.MenuItemTopping(menu_item_id=pizza.id, name="Extra cheese", price_cents=150)
    basil = models.MenuItemTopping(menu_item_id=pizza.id, name="Basil", price_cents=50)
    broth = models.ModifierGroup(
        menu_item_id=pho.id, name="Broth", required=True, min_choices=1, max_choices=1, sort_order=0
    )
    addons = models.ModifierGroup(menu_item_id=pho.id, name="Add-ons", max_choices=2, sort_order=1)
    for obj in (regular, large, cheese, basil, broth, addons):
        db.add(obj)
    db.commit()

    clear_broth = models.ModifierOption(group_id=broth.id, name="Clear", price_delta_cents=0)
    spicy_broth = models.ModifierOption(group_id=broth.id, name="Spicy", price_delta_cents=50)
    egg = models.ModifierOption(group_id=addons.id, name="Egg", price_delta_cents=100)
    noodles = models.ModifierOption(group_id=addons.id, name="Extra noodles", price_delta_cents=150)
    small = models.ModifierOption(group_id=addons.id, name="Half portion", price_delta_cents=-200)
    for obj in (clear_broth, spicy_broth, egg, noodles, small):
        db.add(obj)

    db.add(models.Promotion(
        tenant_id=tenant.id,
        code="WELCOME10",
        description="10% off, up to $5",
        type=models.PromotionType.percentage,
        value=Decimal("10"),
        max_discount=Decimal("5.00"),
        starts_at=now - timedelta(days=1),
        expires_at=now + timedelta(days=30),
    ))
    db.add(models.Promotion(
        tenant_id=tenant.id,
        code="FIVEOFF",
        type=models.PromotionType.fixed,
        value=Decimal("5.00"),
        min_order_value=Decimal("20.00"),
        starts_at=now - timedelta(days=1),
        expires_at=now + timedelta(days=30),
        usage_limit=1,
    ))
    db.add(models.Promotion(
        tenant_id=tenant.id,
        code="OLDPROMO",
        type=models.PromotionType.fixed,
        value=Decimal("2.00"),
        starts_at=now - timedelta(days=30),
        expires_at=now - timedelta(days=1),
    ))

    owner = models.User(
        email="owner@pho.test",
        hashed_password=STAFF_PASSWORD_HASH,
        role=models.StaffRole.owner,
        tenant_id=tenant.id,
    )
    cook = models.User(
        email="kitchen@pho.test",
        hashed_password=STAFF_PASSWORD_HASH,
        role=models.StaffRole.kitchen,
        tenant_id=tenant.id,
    )
    db.add(owner)
    db.add(cook)
    db.commit()

    return SimpleNamespace(
        tenant_id=tenant.id,
        table_id=table.id,
        qr_token=table.qr_token,
        other_table_id=other_table.id,
        other_qr_token=other_table.qr_token,
        pizza_id=pizza.id,
        regular_id=regular.id,
        large_id=large.id,
        cheese_id=cheese.id,
        basil_id=basil.id,
        pho_id=pho.id,
        broth_id=broth.id,
        clear_broth_id=clear_broth.id,
        spicy_broth_id=spicy_broth.id,
        addons_id=addons.id,
        egg_id=egg.id,
        noodles_id=noodles.id,
        small_id=small.id,
        lemonade_id=lemonade.id,
        owner_id=owner.id,
        cook_id=cook.id,
    )


@pytest.fixture
def client(db):
    def get_session_override():
        return db

    app.dependency_overrides[get_session] = get_session_override
    # No context manager: lifespan (table creation on the real engine) is not needed
    yield TestClient(app)
    app.dependency_overrides.clear()


def staff_token(user: models.User) -> str:
    return create_access_token(
        data={
            "sub": user.email,
            "tenant_id": user.tenant_id,
            "role": user.role.value,
            "token_version": user.token_version,
        },
        expires_delta=timedelta(minutes=30),
    )


@pytest.fixture
def owner_token(db, seed):
    return staff_token(db.get(models.User, seed.owner_id))


@pytest.fixture
def owner_headers(owner_token):
    return {"Authorization": f"Bearer {owner_token}"}


@pytest.fixture
def kitchen_headers(db, seed):
    return {"Authorization": f"Bearer {staff_token(db.get(models.User, seed.cook_id))}"}


@pytest.fixture
def customer(client, seed):
    """TestClient holding a table session cookie for table T5."""
    response = client.post("/api/v1/sessions/scan", json={"token": seed.qr_token})
    assert response.status_code == 200
    return client


@pytest.fixture
def add_pizza(customer, seed):
    """Add Large Margherita with extra cheese (16.45 each)."""
    def _add(quantity=2, special_instructions=None):
        response = customer.post("/api/v1/cart/items", json={
            "menu_item_id": seed.pizza_id,
            "selections": {"size_id": seed.large_id, "topping_ids": [seed.cheese_id]},
            "quantity": quantity,
            "special_instructions": special_instructions,
        })
        assert response.status_code == 200, response.text
        return response.json()["data"]
    return _add


@pytest.fixture
def place_order(customer, seed, add_pizza):
    """Add 2 x Large Margherita + cheese and check out (total 37.84)."""
    def _place(payment_method="BILL_TO_TABLE", promo_code=None):
        add_pizza()
        response = customer.post("/api/v1/checkout", json={
            "table_id": seed.table_id,
            "payment_method": payment_method,
            "promo_code": promo_code,
        })
        assert response.status_code == 201, response.text
        return response.json()["data"]
    return _place


class RecordingTransport(httpx.AsyncBaseTransport):
    """ASGI transport that records requests and can simulate a network outage or lost responses."""

    def __init__(self, target_app):
        self.inner = httpx.ASGITransport(app=target_app)
        self.requests: list[httpx.Request] = []
        self.offline = False
        self.drop_responses = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("network unreachable", request=request)
        response = await self.inner.handle_async_request(request)
        if self.drop_responses:
            # The server handled the request; only the answer is lost
            await response.aclose()
            raise httpx.ReadTimeout("timed out waiting for response", request=request)
        return response

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.fixture
def transport(client):
    # Depends on client for the session override
    return RecordingTransport(app)


@pytest.fixture
async def api(transport):
    lost = []
    client = ApiClient("http://testserver", transport=transport, on_session_lost=lost.append)
    client.lost_sessions = lost
    yield client
    await client.aclose()


@pytest.fixture
def menu(db, seed):
    """Customer projections of the seeded menu, keyed by name."""
    return {item.name: item for item in list_menu(db, seed.tenant_id)}


@pytest.fixture
def submit_order(api, seed, menu):
    """Scan, add 2 x Large Margherita + cheese and check out through the client (total 37.84)."""
    async def _submit(payment_method="BILL_TO_TABLE"):
        await SessionResolver(api).resolve_qr_token(seed.qr_token)
        cart = CartStore(api)
        await cart.fetch_cart()
        await cart.add_item(
            menu["Margherita"],
            models.CartSelections(size_id=seed.large_id, topping_ids=[seed.cheese_id]),
            quantity=2,
        )
        return await Checkout(api, cart).submit_order(seed.table_id, payment_method=payment_method)
    return _submit
