"""
Stripe Connect onboarding for tenants.

A tenant gets one Express account, created lazily the first time the admin UI
asks for an onboarding link. Once the account has submitted its details the
tenant is sent to the Express dashboard instead of a new onboarding flow.
"""

import logging

from sqlmodel import Session

from .errors import InvalidRequestError, NotFoundError, UpstreamError
from .gateway import StripeGateway
from .models import Tenant

logger = logging.getLogger(__name__)


def ensure_onboarded(
    session: Session,
    gateway: StripeGateway,
    tenant_id: str | None,
    email: str | None,
    app_url: str,
) -> dict:
    if not tenant_id:
        raise InvalidRequestError("Paramètre manquant : tenantId")

    tenant = session.get(Tenant, tenant_id)
    if not tenant:
        raise UpstreamError(f"Restaurant introuvable : {tenant_id}")

    account_id = tenant.stripe_connect_id
    if not account_id:
        account_id = gateway.create_connected_account(email, tenant.id)
        # Persist right away so a failure below cannot orphan the account
        tenant.stripe_connect_id = account_id
        session.add(tenant)
        session.commit()

    account = gateway.retrieve_account(account_id)

    if account["details_submitted"]:
        url = gateway.create_login_link(account_id)
    else:
        url = gateway.create_onboarding_link(
            account_id,
            refresh_url=f"{app_url}/admin/settings?connect=refresh",
            return_url=f"{app_url}/admin/settings?connect=success",
        )
    return {"url": url}


def check_connect_status(session: Session, gateway: StripeGateway, tenant_id: str | None) -> dict:
    """Read the account state from Stripe and enable payments once it's ready.

    Same confirmation as the account.updated webhook, for when the admin
    returns from onboarding before the event arrives. Never disables payments.
    """
    if not tenant_id:
        raise InvalidRequestError("Paramètre manquant : tenantId")

    tenant = session.get(Tenant, tenant_id)
    if not tenant or not tenant.stripe_connect_id:
        raise NotFoundError("Restaurant ou compte Stripe introuvable.")

    account = gateway.retrieve_account(tenant.stripe_connect_id)
    is_ready = account["charges_enabled"] and account["details_submitted"]

    if is_ready and not tenant.payments_enabled:
        tenant.payments_enabled = True
        session.add(tenant)
        session.commit()
        logger.info(f"Payments enabled for tenant {tenant.id} via status check")

    return {
        "success": True,
        "isReady": is_ready,
        "accountId": account["id"],
        "details": {
            "charges_enabled": account["charges_enabled"],
            "details_submitted": account["details_submitted"],
        },
    }
