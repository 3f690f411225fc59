from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from pydantic.alias_generators import to_camel
from sqlalchemy import Numeric
from sqlmodel import Field, Relationship, SQLModel


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    preparing = "preparing"
    served = "served"
    completed = "completed"
    cancelled = "cancelled"


class SubscriptionStatus(str, Enum):
    trial = "trial"
    trialing = "trialing"  # Stripe's own spelling for trial subscriptions
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"
    unpaid = "unpaid"


class PlanType(str, Enum):
    free = "free"
    standard = "standard"  # Bistro
    business_lounge = "business_lounge"  # Premium
    grande_reserve = "grande_reserve"  # Elite


# ============ LEDGER TABLES ============

class Tenant(SQLModel, table=True):
    """A restaurant account: the unit of billing and data isolation."""
    __tablename__ = "tenants"

    id: str = Field(default_factory=_new_id, primary_key=True)
    slug: str = Field(unique=True, index=True)
    name: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    # Stripe Connect (diner payments)
    stripe_connect_id: str | None = Field(default=None, unique=True, index=True)
    payments_enabled: bool = Field(default=False)  # Only ever flipped by gateway confirmation

    # Platform subscription (tenant pays the platform)
    stripe_customer_id: str | None = Field(default=None, index=True)
    subscription_status: SubscriptionStatus = Field(default=SubscriptionStatus.trial)
    plan_type: PlanType = Field(default=PlanType.standard)
    current_period_end: datetime | None = None


class TenantMixin(SQLModel):
    tenant_id: str = Field(foreign_key="tenants.id", index=True)


class MenuItem(TenantMixin, table=True):
    """Catalog entry. The price here is the only price checkout trusts."""
    __tablename__ = "menu_items"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    price: Decimal = Field(sa_type=Numeric(10, 2))
    image_url: str | None = None
    is_available: bool = Field(default=True)


class DiningTable(TenantMixin, table=True):
    __tablename__ = "dining_tables"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str  # e.g., "Table 5"


class Order(TenantMixin, table=True):
    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    table_id: str | None = Field(default=None, foreign_key="dining_tables.id")
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    total_price: Decimal = Field(default=Decimal("0"), sa_type=Numeric(10, 2))
    tip_amount: Decimal = Field(default=Decimal("0"), sa_type=Numeric(10, 2))
    application_fee_amount: Decimal = Field(default=Decimal("0"), sa_type=Numeric(10, 2))

    # Idempotency key for webhook replays: one order per checkout session
    checkout_session_id: str | None = Field(default=None, unique=True, index=True)
    payment_intent_id: str | None = Field(default=None, index=True)
    customer_email: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, index=True)

    lines: list["OrderLine"] = Relationship(back_populates="order")


class OrderLine(SQLModel, table=True):
    __tablename__ = "order_lines"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    # Null when the catalog item was deleted between payment and reconciliation
    item_id: str | None = Field(default=None, foreign_key="menu_items.id")
    description: str = ""  # Snapshot of the item name at purchase time
    quantity: int
    unit_price: Decimal = Field(sa_type=Numeric(10, 2))  # Snapshot, never recomputed

    order: Order = Relationship(back_populates="lines")


class CheckoutAttempt(SQLModel, table=True):
    """Append-only rate-limit ledger."""
    __tablename__ = "checkout_attempts"

    id: int | None = Field(default=None, primary_key=True)
    identifier: str = Field(index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)


# ============ REQUEST MODELS ============
# Front-end sends camelCase JSON; fields are snake_case in Python.

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(ApiModel):
    id: str
    quantity: int = PydanticField(gt=0)
    # Anything else the client sends (price, name, ...) is ignored on purpose
    model_config = ConfigDict(extra="ignore")


class CheckoutRequest(ApiModel):
    cart: list[CartItem] = []
    tenant_id: str | None = None
    table_id: str | None = None
    tip_amount: Decimal | None = None
    slug: str | None = None
    customer_email: str | None = None


class OnboardingRequest(ApiModel):
    tenant_id: str | None = None
    email: str | None = None


class ConnectStatusRequest(ApiModel):
    tenant_id: str | None = None


class SubscriptionCheckoutRequest(ApiModel):
    price_id: str | None = None
    tenant_id: str | None = None
    email: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None
    plan_type: PlanType | None = None


class PortalRequest(ApiModel):
    tenant_id: str | None = None
    return_url: str | None = None


class PaymentIntentRequest(ApiModel):
    amount: int | None = None  # cents
    tenant_id: str | None = None
    order_id: int | None = None


class SyncSubscriptionRequest(ApiModel):
    tenant_id: str | None = None
    email: str | None = None
