"""
Webhook reconciliation.

Stripe events are applied to the ledger through a registry of handlers keyed
by event type. Handlers must be idempotent: Stripe delivers at least once, may
deliver concurrently and gives no ordering guarantee between event types.

Handlers raise freely; `process_event` logs the failure, rolls the DB session
back and swallows it so the endpoint still answers 200. A non-2xx answer would
only make Stripe redeliver an event that fails the same way again.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .checkout_service import compute_application_fee
from .gateway import StripeGateway
from .models import (
    DiningTable,
    MenuItem,
    Order,
    OrderLine,
    OrderStatus,
    PlanType,
    SubscriptionStatus,
    Tenant,
)
from .notifications import OrderEventPublisher

logger = logging.getLogger(__name__)


@dataclass
class WebhookContext:
    session: Session
    gateway: StripeGateway
    publisher: OrderEventPublisher


EventHandler = Callable[[WebhookContext, dict], None]

EVENT_HANDLERS: dict[str, EventHandler] = {}
CHECKOUT_HANDLERS: dict[str, EventHandler] = {}


def handles(event_type: str, registry: dict[str, EventHandler] = EVENT_HANDLERS):
    """Register a handler for an event type (or checkout metadata type)."""
    def decorator(func: EventHandler) -> EventHandler:
        registry[event_type] = func
        return func
    return decorator


def process_event(ctx: WebhookContext, event: dict) -> bool:
    """Apply one verified event. Returns False if the type has no handler."""
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Ignoring unhandled event type {event_type}")
        return False

    obj = (event.get("data") or {}).get("object") or {}
    logger.info(f"Processing {event_type} ({event.get('id')})")
    try:
        handler(ctx, obj)
    except Exception as e:
        logger.error(f"Error handling {event_type} ({event.get('id')}): {e}", exc_info=True)
        ctx.session.rollback()
    return True


def _from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def _parse_plan(value: str | None) -> PlanType:
    try:
        return PlanType(value or PlanType.standard.value)
    except ValueError:
        logger.warning(f"Unknown plan type {value!r}, using standard")
        return PlanType.standard


def _tenants_for_customer(session: Session, customer_id: str | None) -> list[Tenant]:
    if not customer_id:
        return []
    return list(session.exec(select(Tenant).where(Tenant.stripe_customer_id == customer_id)).all())


# ============ CHECKOUT SESSIONS ============

@handles("checkout.session.completed")
def handle_checkout_completed(ctx: WebhookContext, checkout: dict) -> None:
    checkout_type = (checkout.get("metadata") or {}).get("type")
    handler = CHECKOUT_HANDLERS.get(checkout_type)
    if handler is None:
        logger.info(f"Ignoring checkout session {checkout.get('id')} with type {checkout_type!r}")
        return
    handler(ctx, checkout)


@handles("subscription_upgrade", registry=CHECKOUT_HANDLERS)
def activate_subscription(ctx: WebhookContext, checkout: dict) -> None:
    metadata = checkout.get("metadata") or {}
    tenant_id = metadata.get("tenantId")
    tenant = ctx.session.get(Tenant, tenant_id) if tenant_id else None
    if not tenant:
        logger.warning(f"Subscription checkout {checkout.get('id')} for unknown tenant {tenant_id}")
        return

    tenant.subscription_status = SubscriptionStatus.active
    tenant.stripe_customer_id = checkout.get("customer") or tenant.stripe_customer_id
    tenant.plan_type = _parse_plan(metadata.get("planType"))
    ctx.session.add(tenant)
    ctx.session.commit()
    logger.info(f"Tenant {tenant.id} subscription active ({tenant.plan_type.value})")


def _resolve_table(session: Session, tenant_id: str, table_id: str | None) -> str | None:
    if not table_id:
        return None
    table = session.get(DiningTable, table_id)
    if not table or table.tenant_id != tenant_id:
        logger.warning(f"Table {table_id} not found for tenant {tenant_id}, order kept without table")
        return None
    return table.id


def _build_order_lines(
    session: Session, tenant_id: str, line_items: list[dict]
) -> tuple[list[OrderLine], int, int]:
    """Map Stripe line items back to catalog lines.

    Returns (lines, product_cents, tip_cents). Lines without an itemId in
    their product metadata cannot be mapped and are left out. An itemId that
    no longer exists in the catalog keeps its line with item_id=None.
    """
    mapped_ids = {li["metadata"].get("itemId") for li in line_items} - {None}
    known_ids = set()
    if mapped_ids:
        known_ids = set(session.exec(
            select(MenuItem.id).where(MenuItem.tenant_id == tenant_id, MenuItem.id.in_(mapped_ids))
        ).all())

    lines: list[OrderLine] = []
    product_cents = 0
    tip_cents = 0
    unmapped = 0
    for li in line_items:
        metadata = li["metadata"]
        if metadata.get("kind") == "tip":
            tip_cents += li["amount_total"]
            continue

        product_cents += li["unit_amount"] * li["quantity"]
        item_id = metadata.get("itemId")
        if not item_id:
            unmapped += 1
            continue
        lines.append(OrderLine(
            item_id=item_id if item_id in known_ids else None,
            description=li["description"],
            quantity=li["quantity"],
            unit_price=_from_cents(li["unit_amount"]),
        ))

    if unmapped:
        logger.warning(f"{unmapped} line item(s) without catalog id were not recorded")
    return lines, product_cents, tip_cents


@handles("client_order", registry=CHECKOUT_HANDLERS)
def materialize_client_order(ctx: WebhookContext, checkout: dict) -> None:
    """Create the paid Order (and its lines) for a completed diner checkout."""
    db = ctx.session
    session_id = checkout["id"]

    existing = db.exec(select(Order).where(Order.checkout_session_id == session_id)).first()
    if existing:
        logger.info(f"Checkout {session_id} already recorded as order #{existing.id}, skipping")
        return

    metadata = checkout.get("metadata") or {}
    tenant_id = metadata.get("tenantId")
    tenant = db.get(Tenant, tenant_id) if tenant_id else None
    if not tenant:
        logger.error(f"Client order checkout {session_id} for unknown tenant {tenant_id}")
        return

    table_id = _resolve_table(db, tenant.id, metadata.get("tableId"))
    line_items = ctx.gateway.list_checkout_line_items(session_id)
    lines, product_cents, tip_cents = _build_order_lines(db, tenant.id, line_items)

    fee_value = metadata.get("applicationFeeCents")
    application_fee_cents = (
        int(fee_value) if fee_value and fee_value.isdigit() else compute_application_fee(product_cents)
    )
    amount_total = checkout.get("amount_total")
    if amount_total is None:
        amount_total = product_cents + tip_cents

    # Delayed payment methods complete the session before the money arrives
    payment_status = checkout.get("payment_status")
    status = OrderStatus.pending if payment_status == "unpaid" else OrderStatus.paid

    order = Order(
        tenant_id=tenant.id,
        table_id=table_id,
        status=status,
        total_price=_from_cents(amount_total),
        tip_amount=_from_cents(tip_cents),
        application_fee_amount=_from_cents(application_fee_cents),
        checkout_session_id=session_id,
        payment_intent_id=checkout.get("payment_intent"),
        customer_email=(checkout.get("customer_details") or {}).get("email")
        or checkout.get("customer_email"),
    )
    order.lines = lines
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # A concurrent delivery of the same event won the insert
        if db.exec(select(Order).where(Order.checkout_session_id == session_id)).first():
            logger.info(f"Checkout {session_id} recorded by a concurrent delivery, skipping")
            return
        raise
    db.refresh(order)

    if not lines:
        logger.warning(f"Order #{order.id} from checkout {session_id} has no lines")
    logger.info(
        f"Order #{order.id} created for tenant {tenant.id}: total={order.total_price} "
        f"fee={order.application_fee_amount} tip={order.tip_amount}"
    )
    ctx.publisher.publish_order_update(tenant.id, {
        "type": "order_paid" if status == OrderStatus.paid else "order_created",
        "order_id": order.id,
        "status": order.status.value,
        "total_price": str(order.total_price),
    }, table_id=table_id)


@handles("checkout.session.async_payment_succeeded")
def confirm_delayed_checkout(ctx: WebhookContext, checkout: dict) -> None:
    db = ctx.session
    order = db.exec(select(Order).where(Order.checkout_session_id == checkout.get("id"))).first()
    if not order:
        # The completed event has not been processed yet; it will see payment_status=paid
        logger.info(f"No order yet for checkout {checkout.get('id')}")
        return
    if order.status != OrderStatus.pending:
        return
    order.status = OrderStatus.paid
    db.add(order)
    db.commit()
    ctx.publisher.publish_order_update(order.tenant_id, {
        "type": "order_paid", "order_id": order.id, "status": order.status.value,
    }, table_id=order.table_id)


# ============ SUBSCRIPTIONS ============

@handles("customer.subscription.deleted")
def cancel_subscription(ctx: WebhookContext, subscription: dict) -> None:
    changed = False
    for tenant in _tenants_for_customer(ctx.session, subscription.get("customer")):
        if tenant.subscription_status == SubscriptionStatus.canceled:
            continue
        tenant.subscription_status = SubscriptionStatus.canceled
        tenant.plan_type = PlanType.free
        ctx.session.add(tenant)
        changed = True
        logger.info(f"Tenant {tenant.id} subscription canceled")
    if changed:
        ctx.session.commit()


@handles("customer.subscription.updated")
def update_subscription(ctx: WebhookContext, subscription: dict) -> None:
    try:
        status = SubscriptionStatus(subscription.get("status"))
    except ValueError:
        logger.warning(f"Unsupported subscription status {subscription.get('status')!r}")
        return

    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        period_end = items[0].get("current_period_end") if items else None
    plan_value = (subscription.get("metadata") or {}).get("planType")

    tenants = _tenants_for_customer(ctx.session, subscription.get("customer"))
    for tenant in tenants:
        tenant.subscription_status = status
        if status == SubscriptionStatus.canceled:
            tenant.plan_type = PlanType.free
        elif plan_value:
            tenant.plan_type = _parse_plan(plan_value)
        if period_end:
            tenant.current_period_end = datetime.fromtimestamp(period_end, tz=timezone.utc)
        ctx.session.add(tenant)
    if tenants:
        ctx.session.commit()


# ============ CONNECT ============

@handles("account.updated")
def enable_payments(ctx: WebhookContext, account: dict) -> None:
    # Only ever enables: a later event with charges disabled leaves it as is
    if not (account.get("charges_enabled") and account.get("details_submitted")):
        return

    tenant = ctx.session.exec(
        select(Tenant).where(Tenant.stripe_connect_id == account.get("id"))
    ).first()
    if not tenant:
        logger.warning(f"account.updated for unknown connected account {account.get('id')}")
        return
    if tenant.payments_enabled:
        return

    tenant.payments_enabled = True
    ctx.session.add(tenant)
    ctx.session.commit()
    logger.info(f"Payments enabled for tenant {tenant.id}")


# ============ PAYMENT INTENTS ============

@handles("payment_intent.succeeded")
def mark_order_paid(ctx: WebhookContext, intent: dict) -> None:
    order_ref = (intent.get("metadata") or {}).get("orderId")
    if not order_ref:
        return
    try:
        order_id = int(order_ref)
    except ValueError:
        logger.warning(f"payment_intent {intent.get('id')} has invalid orderId {order_ref!r}")
        return

    order = ctx.session.get(Order, order_id)
    if not order:
        logger.warning(f"payment_intent {intent.get('id')} for unknown order #{order_id}")
        return
    # Never move an order backwards (e.g. from preparing to paid)
    if order.status != OrderStatus.pending:
        return

    order.status = OrderStatus.paid
    order.payment_intent_id = intent.get("id")
    ctx.session.add(order)
    ctx.session.commit()
    logger.info(f"Order #{order.id} marked paid by {intent.get('id')}")
    ctx.publisher.publish_order_update(order.tenant_id, {
        "type": "order_paid", "order_id": order.id, "status": order.status.value,
    }, table_id=order.table_id)
