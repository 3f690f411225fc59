import logging

import stripe
from fastapi import APIRouter, Depends, Header, Request
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from .db import get_session
from .errors import InvalidRequestError
from .gateway import StripeGateway, get_gateway
from .notifications import OrderEventPublisher, get_publisher
from .webhook_service import WebhookContext, process_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
    publisher: OrderEventPublisher = Depends(get_publisher),
) -> dict:
    # Signature covers the exact bytes Stripe sent: read the raw body, never a parsed model
    payload = await request.body()

    try:
        event = gateway.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Webhook rejected: {e}")
        raise InvalidRequestError(f"Webhook Error: {e}")

    await run_in_threadpool(process_event, WebhookContext(session, gateway, publisher), event)
    return {"received": True}
