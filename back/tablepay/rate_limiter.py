import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlmodel import Session, func, select

from .errors import RateLimitedError
from .models import CheckoutAttempt

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Trop de tentatives de paiement. Veuillez patienter une minute."


def client_identifier(client_address: str | None, table_id: str | None) -> str:
    return f"{client_address or 'unknown'}-{table_id or 'no-table'}"


class SlidingWindowRateLimiter:
    """
    Count-based sliding window over the checkout_attempts table.

    The count and the insert are not atomic, so concurrent requests from one
    client can slip a few extra attempts through. It is an abuse deterrent,
    not a security boundary.
    """

    def __init__(self, session: Session, limit: int = 5, window_seconds: int = 60):
        self.session = session
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)

    def count_recent(self, identifier: str, now: datetime) -> int:
        statement = (
            select(func.count())
            .select_from(CheckoutAttempt)
            .where(CheckoutAttempt.identifier == identifier)
            .where(CheckoutAttempt.created_at >= now - self.window)
        )
        return self.session.exec(statement).one()

    def hit(self, identifier: str, now: datetime | None = None) -> None:
        """Reject when the window is full, otherwise record this attempt."""
        now = now or datetime.now(timezone.utc)
        if self.count_recent(identifier, now) >= self.limit:
            logger.warning(f"Checkout rate limit hit for {identifier}")
            raise RateLimitedError(RATE_LIMIT_MESSAGE)

        self.session.add(CheckoutAttempt(identifier=identifier, created_at=now))
        self.session.commit()


def prune_attempts(session: Session, before: datetime) -> int:
    """Retention: delete attempts older than `before`. Returns rows removed."""
    result = session.execute(delete(CheckoutAttempt).where(CheckoutAttempt.created_at < before))
    session.commit()
    return result.rowcount
