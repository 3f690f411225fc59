import logging
from contextlib import asynccontextmanager

import stripe
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import check_db_connection, create_db_and_tables
from .errors import PaymentError, describe_validation_errors
from .gateway import StripeGateway
from .notifications import OrderEventPublisher
from .payment_routes import router as payment_router
from .platform_routes import router as platform_router
from .settings import settings
from .webhook_routes import router as webhook_router

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting payment service...")
    create_db_and_tables()
    # Built once per process and injected into handlers via dependencies
    app.state.gateway = StripeGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.stripe_currency,
    )
    app.state.publisher = OrderEventPublisher.from_url(settings.redis_url)
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set, gateway calls will fail")
    yield
    if app.state.publisher.client is not None:
        app.state.publisher.client.close()


app = FastAPI(title="TablePay Payments API", lifespan=lifespan)

cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject credentials with a wildcard origin
    allow_credentials="*" not in cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============ ERRORS ============
# Every error leaves as {"error": message}

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(PaymentError)
def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return _error(exc.status_code, exc.message)


@app.exception_handler(stripe.StripeError)
def stripe_error_handler(request: Request, exc: stripe.StripeError) -> JSONResponse:
    logger.error(f"Stripe error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error(500, exc.user_message or str(exc))


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error(500, str(exc.orig) if getattr(exc, "orig", None) else str(exc))


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, describe_validation_errors(exc.errors()))


app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(platform_router)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    try:
        check_db_connection()
    except SQLAlchemyError as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return {"status": "ok", "database": "connected"}
