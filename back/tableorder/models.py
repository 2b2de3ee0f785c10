from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel

from .statuses import (
    ItemPrepStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    normalize_order_status,
    normalize_payment_method,
    normalize_payment_status,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Database drivers hand back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Availability(str, Enum):
    available = "Available"
    sold_out = "Sold out"
    unavailable = "Unavailable"


class PromotionType(str, Enum):
    percentage = "PERCENTAGE"
    fixed = "FIXED"


class StaffRole(str, Enum):
    owner = "owner"
    waiter = "waiter"
    kitchen = "kitchen"


class Tenant(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    currency: str = Field(default="USD")

    # Pricing settings (fractions of subtotal, e.g. 0.10)
    tax_rate: Decimal = Field(default=Decimal("0"), max_digits=6, decimal_places=4)
    service_charge_rate: Decimal = Field(default=Decimal("0"), max_digits=6, decimal_places=4)
    estimated_prep_minutes: int = Field(default=15)

    stripe_secret_key: str | None = Field(default=None)  # Stripe secret key for this tenant
    stripe_publishable_key: str | None = Field(default=None)
    # SePay bank transfer (VietQR)
    sepay_bank_code: str | None = Field(default=None)
    sepay_account_number: str | None = Field(default=None)
    sepay_account_name: str | None = Field(default=None)

    users: list["User"] = Relationship(back_populates="tenant")

    @property
    def sepay_configured(self) -> bool:
        return bool(self.sepay_bank_code and self.sepay_account_number)


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    hashed_password: str
    full_name: str | None = None
    role: StaffRole = Field(default=StaffRole.waiter)
    token_version: int = Field(default=0)

    tenant_id: int | None = Field(default=None, foreign_key="tenant.id")
    tenant: Tenant | None = Relationship(back_populates="users")


class TenantMixin(SQLModel):
    tenant_id: int = Field(foreign_key="tenant.id", index=True)


class Table(TenantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_number: str  # e.g. "T5"
    qr_token: str = Field(default_factory=new_id, unique=True, index=True)
    is_active: bool = Field(default=True)


class TableSession(TenantMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    scanned_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    active: bool = Field(default=True, index=True)
    cleared_at: datetime | None = None
    cleared_by_user_id: int | None = None


# ============ MENU ============

class MenuItem(TenantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    description: str | None = None
    price_cents: int
    image_url: str | None = None
    category: str | None = Field(default=None, index=True)
    availability: Availability = Field(default=Availability.available)

    sizes: list["MenuItemSize"] = Relationship(back_populates="menu_item")
    toppings: list["MenuItemTopping"] = Relationship(back_populates="menu_item")
    modifier_groups: list["ModifierGroup"] = Relationship(back_populates="menu_item")


class MenuItemSize(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    menu_item_id: int = Field(foreign_key="menuitem.id", index=True)
    name: str  # e.g. "Large"
    price_cents: int  # Absolute price, replaces the base price

    menu_item: MenuItem = Relationship(back_populates="sizes")


class MenuItemTopping(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    menu_item_id: int = Field(foreign_key="menuitem.id", index=True)
    name: str
    price_cents: int  # Added on top of the unit price

    menu_item: MenuItem = Relationship(back_populates="toppings")


class ModifierGroup(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    menu_item_id: int = Field(foreign_key="menuitem.id", index=True)
    name: str  # e.g. "Spice level"
    required: bool = Field(default=False)
    min_choices: int = Field(default=0)
    max_choices: int | None = None
    sort_order: int = Field(default=0)

    menu_item: MenuItem = Relationship(back_populates="modifier_groups")
    options: list["ModifierOption"] = Relationship(back_populates="group")


class ModifierOption(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    group_id: int = Field(foreign_key="modifiergroup.id", index=True)
    name: str
    price_delta_cents: int = Field(default=0)  # May be negative

    group: ModifierGroup = Relationship(back_populates="options")


# ============ CART ============

class Cart(TenantMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    session_id: str = Field(foreign_key="tablesession.id", unique=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    items: list["CartItem"] = Relationship(back_populates="cart")


class CartItem(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    cart_id: str = Field(foreign_key="cart.id", index=True)
    menu_item_id: int = Field(foreign_key="menuitem.id")
    quantity: int
    special_instructions: str | None = None
    size_id: int | None = None
    topping_ids: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    # {"<group id>": [option ids]}; JSON object keys are strings
    modifiers: dict[str, list[int]] = Field(default_factory=dict, sa_column=Column(JSON))
    # line_id of the last add merged into this line
    last_request_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    cart: Cart = Relationship(back_populates="items")


# ============ ORDERS ============

class Order(TenantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_number: str = Field(index=True)  # ORD-YYYYMMDD-NNNN
    table_id: int = Field(foreign_key="table.id", index=True)
    table_number: str  # Snapshot at order time
    session_id: str = Field(foreign_key="tablesession.id", index=True)
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    customer_name: str | None = None
    notes: str | None = None

    # Frozen totals (integer cents)
    subtotal_cents: int
    tax_cents: int
    service_charge_cents: int
    discount_cents: int = Field(default=0)
    total_cents: int
    promo_code: str | None = None

    payment_method: PaymentMethod = Field(default=PaymentMethod.BILL_TO_TABLE)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    paid_at: datetime | None = None
    estimated_ready_minutes: int | None = None

    # Lifecycle timestamps
    created_at: datetime = Field(default_factory=utcnow)
    received_at: datetime | None = None
    preparing_at: datetime | None = None
    ready_at: datetime | None = None
    served_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None  # 'customer' or 'staff'
    cancel_reason: str | None = None

    items: list["OrderItem"] = Relationship(back_populates="order")


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: int = Field(foreign_key="menuitem.id")
    name: str  # Snapshot of the menu item name at order time
    unit_price_cents: int
    quantity: int
    line_total_cents: int
    # Snapshot of the selected size/toppings/modifiers with names and prices
    selections: dict = Field(default_factory=dict, sa_column=Column(JSON))
    special_instructions: str | None = None

    # Kitchen progress, independent of the order status
    started_at: datetime | None = None
    prepared_at: datetime | None = None
    served_at: datetime | None = None

    order: Order = Relationship(back_populates="items")


class OrderStatusHistory(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    status: OrderStatus
    notes: str | None = None
    changed_by_user_id: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Payment(TenantMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    method: PaymentMethod
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    amount_cents: int  # USD
    amount_vnd: int | None = None  # Only for SEPAY_QR
    currency: str = Field(default="USD")
    transfer_content: str | None = Field(default=None, index=True)
    qr_url: str | None = None
    provider_reference: str | None = None  # Stripe PaymentIntent id
    client_secret: str | None = None
    transaction_id: str | None = Field(default=None, index=True)
    failure_reason: str | None = None
    expires_at: datetime
    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Promotion(TenantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(index=True)  # Stored upper-case
    description: str | None = None
    type: PromotionType
    value: Decimal = Field(max_digits=10, decimal_places=2)  # Percent or USD amount
    max_discount: Decimal | None = Field(default=None, max_digits=10, decimal_places=2)
    min_order_value: Decimal | None = Field(default=None, max_digits=10, decimal_places=2)
    starts_at: datetime
    expires_at: datetime
    usage_limit: int | None = None
    usage_count: int = Field(default=0)
    active: bool = Field(default=True)


# ============ Request/Response Models ============

class SizeRead(SQLModel):
    id: int
    name: str
    price: Decimal


class ToppingRead(SQLModel):
    id: int
    name: str
    price: Decimal


class ModifierOptionRead(SQLModel):
    id: int
    name: str
    price_delta: Decimal


class ModifierGroupRead(SQLModel):
    id: int
    name: str
    required: bool = False
    min_choices: int = 0
    max_choices: int | None = None
    options: list[ModifierOptionRead] = Field(default_factory=list)


class MenuItemRead(SQLModel):
    id: int
    name: str
    description: str | None = None
    base_price: Decimal
    image_url: str | None = None
    category: str | None = None
    availability: Availability = Availability.available
    sizes: list[SizeRead] = Field(default_factory=list)
    toppings: list[ToppingRead] = Field(default_factory=list)
    modifier_groups: list[ModifierGroupRead] = Field(default_factory=list)


class CartSelections(SQLModel):
    size_id: int | None = None
    topping_ids: list[int] = Field(default_factory=list)
    modifiers: dict[int, list[int]] = Field(default_factory=dict)

    def key(self) -> tuple:
        """Order-insensitive identity of the configuration."""
        modifiers = tuple(sorted(
            (group_id, tuple(sorted(set(option_ids))))
            for group_id, option_ids in self.modifiers.items()
            if option_ids
        ))
        return (self.size_id, tuple(sorted(set(self.topping_ids))), modifiers)


class CartLine(SQLModel):
    id: str
    menu_item: MenuItemRead
    selections: CartSelections = Field(default_factory=CartSelections)
    special_instructions: str | None = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    unavailable: bool = False


class CartRead(SQLModel):
    items: list[CartLine] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    service_charge: Decimal = Decimal("0")
    service_charge_rate: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    item_count: int = 0


class AddCartItemRequest(SQLModel):
    menu_item_id: int
    selections: CartSelections = Field(default_factory=CartSelections)
    quantity: int = 1
    special_instructions: str | None = None
    line_id: str | None = None  # Proposed id for a new line (client-generated); also dedupes resends


class UpdateCartItemRequest(SQLModel):
    quantity: int
    special_instructions: str | None = None


class ScanRequest(SQLModel):
    token: str


class TableSessionRead(SQLModel):
    session_id: str
    table_id: int
    tenant_id: int
    table_number: str
    restaurant_name: str
    scanned_at: datetime
    expires_at: datetime
    active: bool = True


class CheckoutRequest(SQLModel):
    table_id: int
    customer_name: str | None = None
    notes: str | None = None
    payment_method: str | None = None  # Canonical or legacy alias
    promo_code: str | None = None


class PromoValidateRequest(SQLModel):
    code: str
    subtotal: Decimal


class PromoValidation(SQLModel):
    valid: bool
    discount_amount: Decimal = Decimal("0")
    error: str | None = None
    code: str | None = None
    type: PromotionType | None = None
    description: str | None = None


class OrderItemRead(SQLModel):
    id: int
    menu_item_id: int
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    selections: dict = Field(default_factory=dict)
    special_instructions: str | None = None
    status: ItemPrepStatus = ItemPrepStatus.QUEUED
    prepared_at: datetime | None = None


class OrderRead(SQLModel):
    id: int
    order_number: str
    table_id: int
    table_number: str
    status: OrderStatus
    customer_name: str | None = None
    notes: str | None = None
    subtotal: Decimal
    tax: Decimal
    service_charge: Decimal
    discount: Decimal = Decimal("0")
    total: Decimal
    promo_code: str | None = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    created_at: datetime
    estimated_ready_minutes: int | None = None
    items: list[OrderItemRead] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return normalize_order_status(value)

    @field_validator("payment_status", mode="before")
    @classmethod
    def _normalize_payment_status(cls, value):
        return normalize_payment_status(value)

    @field_validator("payment_method", mode="before")
    @classmethod
    def _normalize_payment_method(cls, value):
        return normalize_payment_method(value)


class TimelineEntry(SQLModel):
    status: OrderStatus
    label: str
    description: str
    timestamp: datetime | None = None
    completed: bool = False


class ItemTracking(SQLModel):
    id: int
    name: str
    quantity: int
    status: ItemPrepStatus = ItemPrepStatus.QUEUED
    prepared_at: datetime | None = None


class OrderTracking(SQLModel):
    order_id: int
    order_number: str
    table_number: str
    current_status: OrderStatus
    current_status_message: str
    payment_status: PaymentStatus
    timeline: list[TimelineEntry] = Field(default_factory=list)
    items: list[ItemTracking] = Field(default_factory=list)
    estimated_time_remaining: int | None = None
    elapsed_minutes: int = 0
    created_at: datetime

    @field_validator("current_status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return normalize_order_status(value)

    @field_validator("payment_status", mode="before")
    @classmethod
    def _normalize_payment_status(cls, value):
        return normalize_payment_status(value)


class OrderStatusUpdate(SQLModel):
    status: str  # Canonical or legacy Title-Case
    reason: str | None = None


class OrderItemStatusUpdate(SQLModel):
    status: ItemPrepStatus


class OrderCancel(SQLModel):
    reason: str | None = None


class OrderMarkPaid(SQLModel):
    payment_method: str = "cash"  # 'cash', 'terminal', ...


class PaymentCreate(SQLModel):
    order_id: int


class PaymentRead(SQLModel):
    id: str
    order_id: int
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    amount_vnd: int | None = None
    display_amount: str | None = None  # "$37.84 (≈ 946,000 VND)" for SEPAY_QR
    currency: str = "USD"
    qr_url: str | None = None
    transfer_content: str | None = None
    client_secret: str | None = None
    failure_reason: str | None = None
    expires_at: datetime
    time_remaining: int = 0
    already_confirmed: bool = False

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return normalize_payment_status(value)


class SepayWebhook(SQLModel):
    transaction_id: str
    transfer_content: str
    amount: int  # VND
    status: str  # 'success' or 'failed'
    transaction_time: datetime | None = None
