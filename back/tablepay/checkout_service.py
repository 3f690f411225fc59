"""
Checkout construction for diner orders.

Builds a Stripe Checkout session from a cart:
- prices come from the catalog, never from the client
- the platform keeps a 1% application fee on the product subtotal
- the tip is a separate line passed through to the restaurant in full
- funds go to the tenant's connected account via a destination transfer

The order itself is not created here. The webhook materializes it from the
session's line items once payment completes, which is why every catalog line
carries its item id in the product metadata.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from pydantic import ValidationError
from sqlmodel import Session, select

from .errors import InvalidRequestError, UpstreamError, describe_validation_errors
from .gateway import StripeGateway
from .models import CheckoutRequest, MenuItem, Tenant
from .rate_limiter import SlidingWindowRateLimiter, client_identifier

logger = logging.getLogger(__name__)

COMMISSION_RATE = Decimal("0.01")
MINIMUM_CHARGE_CENTS = 50
TIP_LINE_NAME = "Pourboire Équipe (Tip)"

NOT_ACCEPTING_PAYMENTS = "Ce restaurant n'accepte pas encore les paiements en ligne."
ITEMS_GONE = "Certains articles n'existent plus."


def to_cents(amount: Decimal | int | float) -> int:
    """Convert a currency amount to integer cents, rounding half up."""
    cents = Decimal(str(amount)) * 100
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_application_fee(subtotal_cents: int) -> int:
    """Platform commission in cents: round_half_up(subtotal_cents * 1%)."""
    fee = Decimal(subtotal_cents) * COMMISSION_RATE
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class PricedLine:
    item_id: str
    name: str
    unit_cents: int
    quantity: int
    image_url: str | None = None

    @property
    def total_cents(self) -> int:
        return self.unit_cents * self.quantity


def price_cart(session: Session, tenant_id: str, cart: list) -> list[PricedLine]:
    """Resolve cart entries against the tenant's catalog.

    Ids that are unknown, unavailable or belong to another tenant are dropped.
    Only `id` and `quantity` are read from the cart.
    """
    ids = {entry.id for entry in cart}
    items = session.exec(
        select(MenuItem).where(
            MenuItem.tenant_id == tenant_id,
            MenuItem.id.in_(ids),
            MenuItem.is_available == True,  # noqa: E712
        )
    ).all()
    catalog = {item.id: item for item in items}

    lines = []
    for entry in cart:
        item = catalog.get(entry.id)
        if not item:
            logger.info(f"Dropping unknown cart item {entry.id} for tenant {tenant_id}")
            continue
        lines.append(PricedLine(
            item_id=item.id,
            name=item.name,
            unit_cents=to_cents(item.price),
            quantity=entry.quantity,
            image_url=item.image_url,
        ))
    return lines


def _catalog_line_item(line: PricedLine, currency: str) -> dict:
    if not line.item_id:
        # The webhook could not map this line back to the catalog
        raise UpstreamError(f"Article sans identifiant catalogue : {line.name}")
    product_data = {
        "name": line.name,
        "metadata": {"itemId": line.item_id, "kind": "catalog"},
    }
    if line.image_url:
        product_data["images"] = [line.image_url]
    return {
        "price_data": {
            "currency": currency,
            "product_data": product_data,
            "unit_amount": line.unit_cents,
        },
        "quantity": line.quantity,
    }


def _tip_line_item(tip_cents: int, currency: str) -> dict:
    return {
        "price_data": {
            "currency": currency,
            "product_data": {
                "name": TIP_LINE_NAME,
                "description": "Merci pour votre soutien !",
                "metadata": {"kind": "tip"},
            },
            "unit_amount": tip_cents,
        },
        "quantity": 1,
    }


def parse_checkout_request(payload: Any) -> CheckoutRequest:
    if payload is None:
        raise InvalidRequestError("Requête invalide : corps JSON illisible")
    try:
        return CheckoutRequest.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(describe_validation_errors(e.errors()))


def create_checkout(
    session: Session,
    gateway: StripeGateway,
    limiter: SlidingWindowRateLimiter,
    payload: Any,
    client_address: str | None,
    app_url: str,
) -> dict:
    """Hosted checkout URL for a table's cart.

    `payload` is the parsed, unvalidated JSON body (None if it did not parse): the rate
    limit applies to every attempt, malformed ones included, so it runs before
    the body is validated.
    """
    table_id = payload.get("tableId") if isinstance(payload, dict) else None
    limiter.hit(client_identifier(client_address, table_id if isinstance(table_id, str) else None))

    checkout = parse_checkout_request(payload)

    if not checkout.cart or not checkout.tenant_id:
        raise InvalidRequestError("Panier vide ou restaurant manquant.")

    tenant = session.get(Tenant, checkout.tenant_id)
    if not tenant or not tenant.stripe_connect_id:
        raise InvalidRequestError(NOT_ACCEPTING_PAYMENTS)

    lines = price_cart(session, tenant.id, checkout.cart)
    if not lines:
        raise InvalidRequestError(ITEMS_GONE)

    subtotal_cents = sum(line.total_cents for line in lines)
    if subtotal_cents < MINIMUM_CHARGE_CENTS:
        raise InvalidRequestError("Le montant minimum est de 0.50€")

    # Commission on products only, computed before the tip line exists
    application_fee_cents = compute_application_fee(subtotal_cents)

    currency = gateway.currency
    line_items = [_catalog_line_item(line, currency) for line in lines]

    tip_cents = to_cents(checkout.tip_amount) if checkout.tip_amount else 0
    if tip_cents > 0:
        line_items.append(_tip_line_item(tip_cents, currency))

    params = {
        "mode": "payment",
        "line_items": line_items,
        "payment_intent_data": {
            "application_fee_amount": application_fee_cents,
            "transfer_data": {"destination": tenant.stripe_connect_id},
        },
        # Only link between the payment and the tenant/table for the webhook
        "metadata": {
            "type": "client_order",
            "tenantId": tenant.id,
            "tableId": checkout.table_id or "",
            "applicationFeeCents": str(application_fee_cents),
        },
        "invoice_creation": {"enabled": True},
        "success_url": (
            f"{app_url}/order-success?session_id={{CHECKOUT_SESSION_ID}}&tenantId={tenant.id}"
        ),
        "cancel_url": f"{app_url}/m/{checkout.slug or 'menu'}?canceled=true",
    }
    if checkout.customer_email:
        params["customer_email"] = checkout.customer_email

    created = gateway.create_checkout_session(params)
    logger.info(
        f"Checkout session {created['id']} for tenant {tenant.id}: "
        f"subtotal={subtotal_cents} fee={application_fee_cents} tip={tip_cents}"
    )
    return {"url": created["url"]}
