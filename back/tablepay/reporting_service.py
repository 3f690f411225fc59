"""
Platform financials for the superadmin dashboard.

Four independent sources: subscriptions (ledger), Stripe balance, application
fees (our commission) and order volume (ledger). Each one is guarded on its
own; a failing source reports 0/empty and is flagged "error" in `sources`
instead of failing the whole report.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import TypeVar

from sqlmodel import Session, func, select

from .gateway import StripeGateway
from .models import Order, OrderStatus, PlanType, SubscriptionStatus, Tenant

logger = logging.getLogger(__name__)

T = TypeVar("T")

REPORT_WINDOW_DAYS = 30

# Monthly price per plan, in euros
PLAN_MONTHLY_PRICES = {
    PlanType.grande_reserve: 149,
    PlanType.business_lounge: 89,
}
DEFAULT_PLAN_PRICE = 49  # Bistro / standard

BILLABLE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.trialing)

_FRENCH_MONTHS = (
    "janv.", "févr.", "mars", "avr.", "mai", "juin",
    "juil.", "août", "sept.", "oct.", "nov.", "déc.",
)


def french_day_label(day: date) -> str:
    """Short chart label, e.g. '19 oct.'"""
    return f"{day.day:02d} {_FRENCH_MONTHS[day.month - 1]}"


def compute_mrr(session: Session) -> tuple[int, int]:
    """Returns (mrr, active subscription count)."""
    plans = session.exec(
        select(Tenant.plan_type).where(Tenant.subscription_status.in_(BILLABLE_STATUSES))
    ).all()
    mrr = sum(PLAN_MONTHLY_PRICES.get(plan, DEFAULT_PLAN_PRICE) for plan in plans)
    return mrr, len(plans)


def order_volume(session: Session, since: datetime) -> Decimal:
    total = session.exec(
        select(func.coalesce(func.sum(Order.total_price), 0)).where(
            Order.created_at >= since,
            Order.status != OrderStatus.cancelled,
        )
    ).one()
    return Decimal(total)


def commission_by_day(fees: list[dict]) -> dict[date, int]:
    buckets: dict[date, int] = defaultdict(int)
    for fee in fees:
        day = datetime.fromtimestamp(fee["created"], tz=timezone.utc).date()
        buckets[day] += fee["amount"]
    return buckets


class FinancialReport:
    def __init__(self, session: Session, gateway: StripeGateway):
        self.session = session
        self.gateway = gateway
        self.sources: dict[str, str] = {}

    def _guarded(self, name: str, query: Callable[[], T], default: T) -> T:
        try:
            value = query()
        except Exception as e:
            logger.error(f"Financial report source '{name}' failed: {e}", exc_info=True)
            self.session.rollback()
            self.sources[name] = "error"
            return default
        self.sources[name] = "ok"
        return value

    def build(self, now: datetime | None = None) -> dict:
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        days = [
            (now - timedelta(days=days_ago)).date()
            for days_ago in range(REPORT_WINDOW_DAYS - 1, -1, -1)
        ]
        # Window starts at midnight UTC of the first charted day
        since = datetime.combine(days[0], time.min, tzinfo=timezone.utc)

        mrr, active_subs = self._guarded("subscriptions", lambda: compute_mrr(self.session), (0, 0))
        balance = self._guarded(
            "balance", self.gateway.retrieve_balance, {"available": 0, "pending": 0}
        )
        fees = self._guarded(
            "commission", lambda: self.gateway.list_application_fees(int(since.timestamp())), []
        )
        volume = self._guarded(
            "volume", lambda: order_volume(self.session, since), Decimal("0")
        )

        buckets = commission_by_day(fees)
        chart_data = []
        for day in days:
            chart_data.append({
                "date": french_day_label(day),
                "isoDate": day.isoformat(),
                "commission": buckets.get(day, 0) / 100,
            })

        return {
            "mrr": mrr,
            "activeSubs": active_subs,
            "ttv30d": float(volume),
            "totalCommission30d": sum(buckets.get(day, 0) for day in days) / 100,
            "stripeBalance": (balance["available"] + balance["pending"]) / 100,
            "chartData": chart_data,
            "sources": self.sources,
        }


def build_financial_report(
    session: Session, gateway: StripeGateway, now: datetime | None = None
) -> dict:
    return FinancialReport(session, gateway).build(now)
