from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from . import billing_service, checkout_service, models, onboarding_service
from .db import get_session
from .gateway import StripeGateway, get_gateway
from .rate_limiter import SlidingWindowRateLimiter
from .settings import settings

router = APIRouter()


def client_address(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def read_json_body(request: Request) -> Any:
    """Parsed JSON body without model validation, None if it does not decode."""
    try:
        return await request.json()
    except ValueError:
        return None


def get_rate_limiter(session: Session = Depends(get_session)) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(
        session,
        limit=settings.checkout_rate_limit,
        window_seconds=settings.checkout_rate_window_seconds,
    )


# ============ CONNECT ============

@router.post("/onboarding")
def onboarding(
    body: models.OnboardingRequest,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    """Onboarding link for a new account, dashboard login link once onboarded."""
    return onboarding_service.ensure_onboarded(
        session, gateway, body.tenant_id, body.email, settings.app_url
    )


@router.post("/connect-status")
def connect_status(
    body: models.ConnectStatusRequest,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    return onboarding_service.check_connect_status(session, gateway, body.tenant_id)


# ============ DINER CHECKOUT ============

@router.post("/checkout")
def checkout(
    request: Request,
    payload: Any = Depends(read_json_body),
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> dict:
    """Public endpoint - hosted checkout URL for a table's cart."""
    return checkout_service.create_checkout(
        session, gateway, limiter, payload, client_address(request), settings.app_url
    )


@router.post("/payment-intent")
def payment_intent(
    body: models.PaymentIntentRequest,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    return billing_service.create_payment_intent(
        session, gateway, body.amount, body.tenant_id, body.order_id
    )


# ============ TENANT SUBSCRIPTION ============

@router.post("/subscription-checkout")
def subscription_checkout(
    body: models.SubscriptionCheckoutRequest,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    return billing_service.create_subscription_checkout(
        session,
        gateway,
        price_id=body.price_id,
        tenant_id=body.tenant_id,
        email=body.email,
        app_url=settings.app_url,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        plan_type=body.plan_type,
    )


@router.post("/portal")
def portal(
    body: models.PortalRequest,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    return billing_service.create_portal_session(
        session, gateway, body.tenant_id, settings.app_url, body.return_url
    )


@router.post("/sync-subscription")
def sync_subscription(
    body: models.SyncSubscriptionRequest,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    return billing_service.sync_subscription(session, gateway, body.tenant_id, body.email)
