from fastapi import APIRouter, Depends
from sqlmodel import Session

from .db import get_session
from .gateway import StripeGateway, get_gateway
from .reporting_service import build_financial_report

router = APIRouter()


@router.get("/financials")
def financials(
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> dict:
    """Superadmin dashboard figures: MRR, 30-day volume and commission, balance."""
    return build_financial_report(session, gateway)
