import logging
from datetime import datetime
from decimal import Decimal

import pytest
from sqlmodel import Session, select

from conftest import make_event, sign_payload
from tablepay.models import (
    Order,
    OrderLine,
    OrderStatus,
    PlanType,
    SubscriptionStatus,
    Tenant,
)


def _post_event(client, event_type, obj, event_id="evt_test_1", secret=None):
    payload = make_event(event_type, obj, event_id)
    signature = sign_payload(payload, secret) if secret else sign_payload(payload)
    return client.post(
        "/webhook",
        content=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def _orders(engine) -> list[Order]:
    with Session(engine) as session:
        orders = session.exec(select(Order)).all()
        for order in orders:
            order.lines  # load before the session closes
        return orders


def _tenant(engine, tenant_id="tenant-1") -> Tenant:
    with Session(engine) as session:
        return session.get(Tenant, tenant_id)


@pytest.fixture
def paid_checkout(gateway, tenant):
    """A completed diner checkout: 2 burgers and a 3.00 tip."""
    gateway.line_items["cs_live_1"] = [
        {
            "description": "Burger", "quantity": 2, "unit_amount": 1200, "amount_total": 2400,
            "metadata": {"itemId": "burger", "kind": "catalog"},
        },
        {
            "description": "Pourboire Équipe (Tip)", "quantity": 1, "unit_amount": 300,
            "amount_total": 300, "metadata": {"kind": "tip"},
        },
    ]
    return {
        "id": "cs_live_1",
        "object": "checkout.session",
        "amount_total": 2700,
        "payment_status": "paid",
        "payment_intent": "pi_live_1",
        "customer_details": {"email": "diner@example.com"},
        "metadata": {
            "type": "client_order",
            "tenantId": "tenant-1",
            "tableId": "table-5",
            "applicationFeeCents": "24",
        },
    }


# ============ SIGNATURE ============

def test_bad_signature_is_rejected_without_side_effects(client, engine, paid_checkout):
    response = _post_event(
        client, "checkout.session.completed", paid_checkout, secret="whsec_someone_else"
    )

    assert response.status_code == 400
    assert response.json()["error"].startswith("Webhook Error:")
    assert _orders(engine) == []


def test_tampered_payload_is_rejected(client, engine, paid_checkout):
    payload = make_event("checkout.session.completed", paid_checkout)
    signature = sign_payload(payload)

    response = client.post(
        "/webhook",
        content=payload.replace("2700", "1"),
        headers={"Stripe-Signature": signature},
    )

    assert response.status_code == 400
    assert _orders(engine) == []


def test_missing_signature_header(client, engine, paid_checkout):
    response = client.post("/webhook", content=make_event("checkout.session.completed", paid_checkout))

    assert response.status_code == 400
    assert "Webhook Error" in response.json()["error"]


def test_stale_signature_is_rejected(client, tenant):
    payload = make_event("account.updated", {"id": "acct_marcel"})

    response = client.post(
        "/webhook",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload, timestamp=1_000_000_000)},
    )

    assert response.status_code == 400


def test_unknown_event_type_is_acknowledged(client, tenant):
    response = _post_event(client, "invoice.finalized", {"id": "in_1"})

    assert response.status_code == 200
    assert response.json() == {"received": True}


# ============ CLIENT ORDERS ============

def test_completed_checkout_creates_paid_order(client, engine, gateway, publisher, paid_checkout):
    response = _post_event(client, "checkout.session.completed", paid_checkout)

    assert response.status_code == 200
    assert response.json() == {"received": True}

    orders = _orders(engine)
    assert len(orders) == 1
    order = orders[0]
    assert order.tenant_id == "tenant-1"
    assert order.table_id == "table-5"
    assert order.status == OrderStatus.paid
    assert order.total_price == Decimal("27.00")
    assert order.tip_amount == Decimal("3.00")
    assert order.application_fee_amount == Decimal("0.24")
    assert order.checkout_session_id == "cs_live_1"
    assert order.payment_intent_id == "pi_live_1"
    assert order.customer_email == "diner@example.com"

    # The tip is not an order line
    assert len(order.lines) == 1
    line = order.lines[0]
    assert line.item_id == "burger"
    assert line.quantity == 2
    assert line.unit_price == Decimal("12.00")
    assert line.description == "Burger"

    assert gateway.calls_to("list_checkout_line_items") == [{"session_id": "cs_live_1"}]
    assert len(publisher.messages) == 1
    tenant_id, data, table_id = publisher.messages[0]
    assert (tenant_id, table_id) == ("tenant-1", "table-5")
    assert data["type"] == "order_paid"
    assert data["order_id"] == order.id


def test_replayed_checkout_creates_one_order(client, engine, gateway, publisher, paid_checkout):
    first = _post_event(client, "checkout.session.completed", paid_checkout, "evt_a")
    second = _post_event(client, "checkout.session.completed", paid_checkout, "evt_a")

    assert first.status_code == second.status_code == 200
    assert len(_orders(engine)) == 1
    with Session(engine) as session:
        assert len(session.exec(select(OrderLine)).all()) == 1
    assert len(publisher.messages) == 1
    assert len(gateway.calls_to("list_checkout_line_items")) == 1


def test_concurrent_delivery_wins_the_insert(client, engine, gateway, publisher, paid_checkout, caplog):
    caplog.set_level(logging.INFO, logger="tablepay.webhook_service")
    list_line_items = gateway.list_checkout_line_items

    def list_while_other_worker_commits(session_id):
        # Another delivery of the same event records the order in the meantime
        with Session(engine) as other:
            other.add(Order(
                tenant_id="tenant-1", status=OrderStatus.paid,
                total_price=Decimal("27.00"), checkout_session_id=session_id,
            ))
            other.commit()
        return list_line_items(session_id)

    gateway.list_checkout_line_items = list_while_other_worker_commits

    response = _post_event(client, "checkout.session.completed", paid_checkout)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    orders = _orders(engine)
    assert len(orders) == 1
    assert orders[0].lines == []
    with Session(engine) as session:
        assert session.exec(select(OrderLine)).all() == []
    assert publisher.messages == []
    assert "recorded by a concurrent delivery" in caplog.text


def test_fee_recomputed_when_metadata_lacks_it(client, engine, paid_checkout):
    del paid_checkout["metadata"]["applicationFeeCents"]

    _post_event(client, "checkout.session.completed", paid_checkout)

    assert _orders(engine)[0].application_fee_amount == Decimal("0.24")


def test_unmapped_and_deleted_items(client, engine, gateway, paid_checkout):
    gateway.line_items["cs_live_1"] = [
        {
            "description": "Burger", "quantity": 1, "unit_amount": 1200, "amount_total": 1200,
            "metadata": {"itemId": "burger", "kind": "catalog"},
        },
        {
            "description": "Plat supprimé", "quantity": 1, "unit_amount": 800, "amount_total": 800,
            "metadata": {"itemId": "deleted-dish", "kind": "catalog"},
        },
        {
            "description": "Mystère", "quantity": 1, "unit_amount": 500, "amount_total": 500,
            "metadata": {},
        },
    ]
    paid_checkout["amount_total"] = 2500

    response = _post_event(client, "checkout.session.completed", paid_checkout)

    assert response.status_code == 200
    order = _orders(engine)[0]
    assert sorted((line.description, line.item_id) for line in order.lines) == [
        ("Burger", "burger"),
        ("Plat supprimé", None),
    ]
    assert order.total_price == Decimal("25.00")


def test_unknown_table_is_dropped(client, engine, paid_checkout):
    paid_checkout["metadata"]["tableId"] = "table-99"

    _post_event(client, "checkout.session.completed", paid_checkout)

    order = _orders(engine)[0]
    assert order.table_id is None


def test_unknown_tenant_creates_nothing(client, engine, publisher, paid_checkout):
    paid_checkout["metadata"]["tenantId"] = "ghost"

    response = _post_event(client, "checkout.session.completed", paid_checkout)

    assert response.status_code == 200
    assert _orders(engine) == []
    assert publisher.messages == []


def test_handler_failure_still_acknowledged(client, engine, gateway, publisher, paid_checkout):
    gateway.failing.add("list_checkout_line_items")

    response = _post_event(client, "checkout.session.completed", paid_checkout)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert _orders(engine) == []
    assert publisher.messages == []


def test_delayed_payment_completes_later(client, engine, publisher, paid_checkout):
    paid_checkout["payment_status"] = "unpaid"

    _post_event(client, "checkout.session.completed", paid_checkout, "evt_a")
    assert _orders(engine)[0].status == OrderStatus.pending

    _post_event(client, "checkout.session.async_payment_succeeded", {"id": "cs_live_1"}, "evt_b")

    assert _orders(engine)[0].status == OrderStatus.paid
    assert [data["type"] for _, data, _ in publisher.messages] == ["order_created", "order_paid"]


def test_checkout_of_other_type_is_ignored(client, engine, tenant):
    checkout = {"id": "cs_other", "metadata": {"type": "gift_card"}}

    response = _post_event(client, "checkout.session.completed", checkout)

    assert response.status_code == 200
    assert _orders(engine) == []


# ============ CONNECT ============

def test_account_updated_enables_payments_once(client, engine, tenant):
    with Session(engine) as session:
        session.add(Tenant(id="tenant-2", slug="new-place", stripe_connect_id="acct_new"))
        session.commit()
    account = {"id": "acct_new", "charges_enabled": True, "details_submitted": True}

    first = _post_event(client, "account.updated", account, "evt_acct")
    second = _post_event(client, "account.updated", account, "evt_acct")

    assert first.status_code == second.status_code == 200
    assert _tenant(engine, "tenant-2").payments_enabled is True


def test_account_updated_never_disables(client, engine, tenant):
    account = {"id": "acct_marcel", "charges_enabled": False, "details_submitted": True}

    response = _post_event(client, "account.updated", account)

    assert response.status_code == 200
    assert _tenant(engine).payments_enabled is True


def test_incomplete_account_does_not_enable(client, engine, tenant):
    with Session(engine) as session:
        session.add(Tenant(id="tenant-2", slug="new-place", stripe_connect_id="acct_new"))
        session.commit()

    _post_event(client, "account.updated", {
        "id": "acct_new", "charges_enabled": True, "details_submitted": False,
    })

    assert _tenant(engine, "tenant-2").payments_enabled is False


# ============ SUBSCRIPTIONS ============

def test_subscription_lifecycle(client, engine, tenant):
    _post_event(client, "checkout.session.completed", {
        "id": "cs_sub_1",
        "customer": "cus_marcel",
        "metadata": {"type": "subscription_upgrade", "tenantId": "tenant-1", "planType": "business_lounge"},
    }, "evt_1")

    tenant_row = _tenant(engine)
    assert tenant_row.subscription_status == SubscriptionStatus.active
    assert tenant_row.plan_type == PlanType.business_lounge
    assert tenant_row.stripe_customer_id == "cus_marcel"

    _post_event(client, "customer.subscription.deleted", {
        "id": "sub_1", "customer": "cus_marcel", "status": "canceled",
    }, "evt_2")

    tenant_row = _tenant(engine)
    assert tenant_row.subscription_status == SubscriptionStatus.canceled
    assert tenant_row.plan_type == PlanType.free

    _post_event(client, "customer.subscription.updated", {
        "id": "sub_2",
        "customer": "cus_marcel",
        "status": "active",
        "current_period_end": 1893456000,
        "metadata": {"planType": "grande_reserve"},
    }, "evt_3")

    tenant_row = _tenant(engine)
    assert tenant_row.subscription_status == SubscriptionStatus.active
    assert tenant_row.plan_type == PlanType.grande_reserve
    assert tenant_row.current_period_end.replace(tzinfo=None) == datetime(2030, 1, 1)


def test_unknown_plan_falls_back_to_standard(client, engine, tenant):
    _post_event(client, "checkout.session.completed", {
        "id": "cs_sub_1",
        "customer": "cus_marcel",
        "metadata": {"type": "subscription_upgrade", "tenantId": "tenant-1", "planType": "platinum"},
    })

    assert _tenant(engine).plan_type == PlanType.standard


def test_subscription_period_end_from_items(client, engine, tenant):
    with Session(engine) as session:
        row = session.get(Tenant, "tenant-1")
        row.stripe_customer_id = "cus_marcel"
        session.add(row)
        session.commit()

    _post_event(client, "customer.subscription.updated", {
        "id": "sub_1",
        "customer": "cus_marcel",
        "status": "past_due",
        "items": {"data": [{"current_period_end": 1893456000}]},
    })

    tenant_row = _tenant(engine)
    assert tenant_row.subscription_status == SubscriptionStatus.past_due
    assert tenant_row.current_period_end.replace(tzinfo=None) == datetime(2030, 1, 1)


# ============ PAYMENT INTENTS ============

def _add_order(engine, status) -> int:
    with Session(engine) as session:
        order = Order(tenant_id="tenant-1", status=status, total_price=Decimal("15.00"))
        session.add(order)
        session.commit()
        session.refresh(order)
        return order.id


def test_payment_intent_marks_pending_order_paid(client, engine, publisher, tenant):
    order_id = _add_order(engine, OrderStatus.pending)

    _post_event(client, "payment_intent.succeeded", {
        "id": "pi_123", "metadata": {"tenantId": "tenant-1", "orderId": str(order_id)},
    })

    with Session(engine) as session:
        order = session.get(Order, order_id)
        assert order.status == OrderStatus.paid
        assert order.payment_intent_id == "pi_123"
    assert publisher.messages[0][1]["order_id"] == order_id


def test_payment_intent_never_moves_order_backwards(client, engine, publisher, tenant):
    order_id = _add_order(engine, OrderStatus.preparing)

    _post_event(client, "payment_intent.succeeded", {
        "id": "pi_123", "metadata": {"orderId": str(order_id)},
    })

    with Session(engine) as session:
        assert session.get(Order, order_id).status == OrderStatus.preparing
    assert publisher.messages == []


@pytest.mark.parametrize("metadata", [{}, {"orderId": "abc"}, {"orderId": "999"}])
def test_payment_intent_without_usable_order(client, engine, tenant, metadata):
    response = _post_event(client, "payment_intent.succeeded", {"id": "pi_1", "metadata": metadata})

    assert response.status_code == 200
    assert _orders(engine) == []
