"""
Tenant-side billing calls: platform subscription checkout, the Stripe billing
portal, direct payment intents and manual subscription sync.
"""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from .checkout_service import MINIMUM_CHARGE_CENTS, compute_application_fee
from .errors import InvalidRequestError, NotFoundError, UpstreamError
from .gateway import StripeGateway
from .models import Order, PlanType, SubscriptionStatus, Tenant

logger = logging.getLogger(__name__)


def create_subscription_checkout(
    session: Session,
    gateway: StripeGateway,
    price_id: str | None,
    tenant_id: str | None,
    email: str | None,
    app_url: str,
    success_url: str | None = None,
    cancel_url: str | None = None,
    plan_type: PlanType | None = None,
) -> dict:
    if not gateway.api_key:
        raise UpstreamError("Server Config Error: STRIPE_SECRET_KEY missing.")
    if not price_id or not tenant_id:
        raise InvalidRequestError("Paramètres manquants : priceId et tenantId requis.")
    if not session.get(Tenant, tenant_id):
        raise NotFoundError("Restaurant introuvable.")

    plan = (plan_type or PlanType.standard).value
    metadata = {
        "tenantId": tenant_id,
        "type": "subscription_upgrade",
        "planType": plan,
    }
    params = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "metadata": metadata,
        # Copied to the subscription so later subscription events know the plan
        "subscription_data": {"metadata": metadata},
        "success_url": success_url or f"{app_url}/admin/settings?success=true",
        "cancel_url": cancel_url or f"{app_url}/admin/settings?canceled=true",
    }
    if email:
        params["customer_email"] = email

    created = gateway.create_checkout_session(params)
    logger.info(f"Subscription checkout {created['id']} for tenant {tenant_id} ({plan})")
    return {"url": created["url"]}


def create_portal_session(
    session: Session,
    gateway: StripeGateway,
    tenant_id: str | None,
    app_url: str,
    return_url: str | None = None,
) -> dict:
    if not tenant_id:
        raise InvalidRequestError("Paramètre manquant : tenantId")

    tenant = session.get(Tenant, tenant_id)
    if not tenant or not tenant.stripe_customer_id:
        raise NotFoundError("Aucun abonnement trouvé pour ce restaurant.")

    url = gateway.create_portal_session(
        tenant.stripe_customer_id,
        return_url or f"{app_url}/admin/settings",
    )
    return {"url": url}


def create_payment_intent(
    session: Session,
    gateway: StripeGateway,
    amount_cents: int | None,
    tenant_id: str | None,
    order_id: int | None = None,
) -> dict:
    """Direct PaymentIntent for an existing order (embedded payment form).

    Same split as checkout: 1% to the platform, the rest transferred to the
    tenant. The order is marked paid by the payment_intent.succeeded webhook.
    """
    if not amount_cents or not tenant_id:
        raise InvalidRequestError("Paramètres manquants : amount et tenantId requis.")
    if amount_cents < MINIMUM_CHARGE_CENTS:
        raise InvalidRequestError("Le montant minimum est de 0.50€")

    tenant = session.get(Tenant, tenant_id)
    if not tenant or not tenant.stripe_connect_id or not tenant.payments_enabled:
        raise InvalidRequestError("Ce restaurant n'est pas encore prêt à recevoir des paiements.")

    if order_id is not None:
        order = session.exec(
            select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)
        ).first()
        if not order:
            raise NotFoundError("Commande introuvable.")

    client_secret = gateway.create_payment_intent(
        amount_cents=amount_cents,
        destination=tenant.stripe_connect_id,
        application_fee_cents=compute_application_fee(amount_cents),
        metadata={"tenantId": tenant_id, "orderId": str(order_id) if order_id is not None else ""},
    )
    return {"clientSecret": client_secret}


def sync_subscription(
    session: Session,
    gateway: StripeGateway,
    tenant_id: str | None,
    email: str | None,
) -> dict:
    """Pull the tenant's subscription from Stripe when a webhook was missed."""
    if not tenant_id or not email:
        raise InvalidRequestError("Paramètres manquants : tenantId et email requis.")

    tenant = session.get(Tenant, tenant_id)
    if not tenant:
        raise NotFoundError("Restaurant introuvable.")

    found = gateway.find_active_subscription(email)
    if not found:
        raise NotFoundError("Aucun abonnement actif trouvé.")

    try:
        plan = PlanType(found["plan_type"] or PlanType.standard.value)
    except ValueError:
        plan = PlanType.standard

    tenant.stripe_customer_id = found["customer_id"]
    tenant.subscription_status = SubscriptionStatus(found["status"])
    tenant.plan_type = plan
    if found["current_period_end"]:
        tenant.current_period_end = datetime.fromtimestamp(found["current_period_end"], tz=timezone.utc)
    session.add(tenant)
    session.commit()
    logger.info(f"Subscription synced for tenant {tenant_id}: {found['status']} / {plan.value}")

    return {
        "success": True,
        "message": "Abonnement synchronisé avec succès.",
        "data": {
            "stripe_customer_id": tenant.stripe_customer_id,
            "subscription_status": tenant.subscription_status.value,
            "plan_type": tenant.plan_type.value,
            "current_period_end": (
                tenant.current_period_end.isoformat() if tenant.current_period_end else None
            ),
        },
    }
