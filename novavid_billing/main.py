"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from novavid_billing.api.admin_routes import router as admin_router
from novavid_billing.api.dependencies import (
    get_billing_store,
    get_paypal_provider,
    get_stripe_provider,
)
from novavid_billing.api.routes import router
from novavid_billing.api.webhook_routes import router as webhook_router
from novavid_billing.config import settings
from novavid_billing.db.session import close_engines
from novavid_billing.models.api import BillingProvider
from novavid_billing.observability import get_logger, log_context, metrics, setup_logging
from novavid_billing.observability.tracing import instrument_fastapi, setup_tracing
from novavid_billing.services.ledger import LedgerEngine
from novavid_billing.services.payment_provider import PaymentProvider
from novavid_billing.services.reconciler import WebhookReconciler
from novavid_billing.services.sweeper import ReservationSweeper

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_sweeper() -> ReservationSweeper:
    """Sweeper wired to the same store and providers the routes use."""
    store = get_billing_store()
    ledger = LedgerEngine(store)
    providers: dict[BillingProvider, PaymentProvider] = {}
    stripe_provider = get_stripe_provider()
    if stripe_provider is not None:
        providers[BillingProvider.STRIPE] = stripe_provider
    paypal_provider = get_paypal_provider()
    if paypal_provider is not None:
        providers[BillingProvider.PAYPAL] = paypal_provider
    reconciler = WebhookReconciler(store, ledger, providers)
    return ReservationSweeper(
        ledger, reconciler, interval_seconds=settings.reservation_sweep_interval_seconds
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Starts the reservation sweeper and closes the database on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        sweeper_enabled=settings.sweeper_enabled,
    )

    sweeper = build_sweeper() if settings.sweeper_enabled else None
    if sweeper is not None:
        sweeper.start()

    yield

    logger.info("application_shutting_down")
    if sweeper is not None:
        await sweeper.stop()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log validation errors before returning 422."""
    sanitized_errors: list[dict[str, Any]] = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may hold non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)  # Accounts and entitlements
app.include_router(admin_router)  # Manual reconciliation
app.include_router(webhook_router)  # Stripe and PayPal


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "novavid_billing.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
