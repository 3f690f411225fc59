import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Must be set before tablepay.settings is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CORS_ORIGINS", "*")
os.environ.setdefault("APP_URL", "http://localhost:5173")
os.environ.setdefault("CHECKOUT_RATE_LIMIT", "5")
os.environ.setdefault("CHECKOUT_RATE_WINDOW_SECONDS", "60")

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from tablepay.db import get_session
from tablepay.gateway import StripeGateway, get_gateway
from tablepay.main import app as fastapi_app
from tablepay.models import DiningTable, MenuItem, Tenant
from tablepay.notifications import OrderEventPublisher, get_publisher

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """In-memory Stripe: records every call, keeps the real signature check."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, currency="eur")
        self.calls: list[tuple[str, dict]] = []
        self.failing: set[str] = set()
        self.accounts: dict[str, dict] = {}
        self.line_items: dict[str, list[dict]] = {}
        self.balance = {"available": 0, "pending": 0}
        self.fees: list[dict] = []
        self.subscription: dict | None = None

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if name in self.failing:
            raise stripe.APIConnectionError(f"{name} unavailable")

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def create_connected_account(self, email, tenant_id):
        self._record("create_connected_account", email=email, tenant_id=tenant_id)
        account_id = f"acct_test_{len(self.accounts) + 1}"
        self.accounts[account_id] = {
            "id": account_id, "charges_enabled": False, "details_submitted": False,
        }
        return account_id

    def retrieve_account(self, account_id):
        self._record("retrieve_account", account_id=account_id)
        return dict(self.accounts[account_id])

    def create_login_link(self, account_id):
        self._record("create_login_link", account_id=account_id)
        return f"https://connect.stripe.com/express/{account_id}"

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        self._record(
            "create_onboarding_link",
            account_id=account_id, refresh_url=refresh_url, return_url=return_url,
        )
        return f"https://connect.stripe.com/setup/{account_id}"

    def create_checkout_session(self, params):
        self._record("create_checkout_session", params=params)
        session_id = f"cs_test_{len(self.calls_to('create_checkout_session'))}"
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    def list_checkout_line_items(self, session_id):
        self._record("list_checkout_line_items", session_id=session_id)
        return self.line_items.get(session_id, [])

    def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.stripe.com/p/session/{customer_id}"

    def create_payment_intent(self, amount_cents, destination, application_fee_cents, metadata):
        self._record(
            "create_payment_intent",
            amount_cents=amount_cents, destination=destination,
            application_fee_cents=application_fee_cents, metadata=metadata,
        )
        return "pi_test_secret_123"

    def find_active_subscription(self, email):
        self._record("find_active_subscription", email=email)
        return self.subscription

    def retrieve_balance(self):
        self._record("retrieve_balance")
        return self.balance

    def list_application_fees(self, created_since):
        self._record("list_application_fees", created_since=created_since)
        return [fee for fee in self.fees if fee["created"] >= created_since]


class FakePublisher(OrderEventPublisher):
    def __init__(self):
        super().__init__(client=None)
        self.messages: list[tuple[str, dict, str | None]] = []

    def publish_order_update(self, tenant_id, order_data, table_id=None):
        self.messages.append((tenant_id, order_data, table_id))


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for `payload`."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def client(engine, gateway, publisher):
    def override_session():
        with Session(engine) as session:
            yield session

    fastapi_app.dependency_overrides[get_session] = override_session
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_publisher] = lambda: publisher
    # No context manager: the lifespan (real DB, Stripe, Redis) is not started
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def tenant(engine):
    """Onboarded restaurant with a small catalog and one table."""
    with Session(engine) as session:
        tenant = Tenant(
            id="tenant-1",
            slug="chez-marcel",
            name="Chez Marcel",
            stripe_connect_id="acct_marcel",
            payments_enabled=True,
        )
        session.add(tenant)
        session.add(MenuItem(id="burger", tenant_id="tenant-1", name="Burger", price=Decimal("12.00")))
        session.add(MenuItem(id="fries", tenant_id="tenant-1", name="Frites", price=Decimal("3.50")))
        session.add(MenuItem(id="espresso", tenant_id="tenant-1", name="Espresso", price=Decimal("0.20")))
        session.add(MenuItem(
            id="old-dish", tenant_id="tenant-1", name="Plat retiré",
            price=Decimal("9.00"), is_available=False,
        ))
        session.add(DiningTable(id="table-5", tenant_id="tenant-1", name="Table 5"))
        session.commit()
    return "tenant-1"
