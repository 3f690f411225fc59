"""
Stripe gateway adapter.

Thin wrapper around the Stripe APIs the payment core uses: Connect accounts,
Checkout sessions, the billing portal, payment intents, balance/fees reporting
and webhook signature verification. It never touches the database.

Every call passes `api_key` explicitly, so one process can hold several
gateways (e.g. a test-mode one) without sharing `stripe.api_key`. Results are
returned as plain values/dicts so callers and test fakes don't depend on
StripeObject.
"""

import json
import logging

import stripe
from fastapi import Request

logger = logging.getLogger(__name__)


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str = "", currency: str = "eur"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    # ============ CONNECT ============

    def create_connected_account(self, email: str | None, tenant_id: str) -> str:
        account = stripe.Account.create(
            type="express",
            email=email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            metadata={"tenantId": tenant_id},
            api_key=self.api_key,
        )
        logger.info(f"Created connected account {account.id} for tenant {tenant_id}")
        return account.id

    def retrieve_account(self, account_id: str) -> dict:
        account = stripe.Account.retrieve(account_id, api_key=self.api_key)
        return {
            "id": account.id,
            "charges_enabled": bool(account.get("charges_enabled")),
            "details_submitted": bool(account.get("details_submitted")),
        }

    def create_login_link(self, account_id: str) -> str:
        link = stripe.Account.create_login_link(account_id, api_key=self.api_key)
        return link.url

    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        link = stripe.AccountLink.create(
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
            api_key=self.api_key,
        )
        return link.url

    # ============ CHECKOUT & BILLING ============

    def create_checkout_session(self, params: dict) -> dict:
        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return {"id": session.id, "url": session.url}

    def list_checkout_line_items(self, session_id: str) -> list[dict]:
        """
        Line items of a completed session with their product metadata.

        The product is expanded because the catalog item id lives in
        `product.metadata.itemId`.
        """
        line_items = stripe.checkout.Session.list_line_items(
            session_id,
            limit=100,
            expand=["data.price.product"],
            api_key=self.api_key,
        )
        result = []
        for li in line_items.auto_paging_iter():
            price = li.get("price") or {}
            product = price.get("product") if price else None
            # Unexpanded product is just an id string: no metadata to map
            metadata = dict(product.get("metadata") or {}) if isinstance(product, dict) else {}
            result.append({
                "description": li.get("description") or "",
                "quantity": li.get("quantity") or 0,
                "unit_amount": price.get("unit_amount") or 0,
                "amount_total": li.get("amount_total") or 0,
                "metadata": metadata,
            })
        return result

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
            api_key=self.api_key,
        )
        return session.url

    def create_payment_intent(
        self,
        amount_cents: int,
        destination: str,
        application_fee_cents: int,
        metadata: dict,
    ) -> str:
        intent = stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=self.currency,
            payment_method_types=["card"],
            transfer_data={"destination": destination},
            application_fee_amount=application_fee_cents,
            metadata=metadata,
            api_key=self.api_key,
        )
        return intent.client_secret

    def find_active_subscription(self, email: str) -> dict | None:
        """
        First active/trialing subscription among the customers with this email.
        Several customers may share one email, so a handful are inspected.
        """
        customers = stripe.Customer.list(
            email=email,
            limit=5,
            expand=["data.subscriptions"],
            api_key=self.api_key,
        )
        for customer in customers.data:
            subscriptions = customer.get("subscriptions")
            for sub in (subscriptions.data if subscriptions else []):
                if sub.get("status") not in ("active", "trialing"):
                    continue
                period_end = sub.get("current_period_end")
                if period_end is None:
                    # Newer API versions keep the period on the subscription items
                    items = sub.get("items")
                    if items and items.data:
                        period_end = items.data[0].get("current_period_end")
                metadata = sub.get("metadata") or {}
                return {
                    "customer_id": customer.id,
                    "status": sub.get("status"),
                    "plan_type": metadata.get("planType"),
                    "current_period_end": period_end,
                }
        return None

    # ============ REPORTING ============

    def retrieve_balance(self) -> dict:
        """Platform balance in cents, summed over currencies."""
        balance = stripe.Balance.retrieve(api_key=self.api_key)
        return {
            "available": sum(entry.amount for entry in balance.available),
            "pending": sum(entry.amount for entry in balance.pending),
        }

    def list_application_fees(self, created_since: int) -> list[dict]:
        fees = stripe.ApplicationFee.list(
            created={"gte": created_since},
            limit=100,
            api_key=self.api_key,
        )
        return [
            {"amount": fee.amount, "created": fee.created}
            for fee in fees.auto_paging_iter()
        ]

    # ============ WEBHOOKS ============

    def construct_event(self, payload: bytes, sig_header: str | None) -> dict:
        """
        Verify the Stripe-Signature header over the raw body and decode it.

        Raises stripe.SignatureVerificationError on a bad/missing signature and
        ValueError on an undecodable body.
        """
        body = payload.decode("utf-8")
        if not sig_header:
            raise stripe.SignatureVerificationError(
                "No Stripe-Signature header", sig_header, body
            )
        if not self.webhook_secret:
            raise stripe.SignatureVerificationError(
                "Webhook secret is not configured", sig_header, body
            )
        stripe.WebhookSignature.verify_header(
            body,
            sig_header,
            self.webhook_secret,
            stripe.Webhook.DEFAULT_TOLERANCE,
        )
        return json.loads(body)


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway
