"""
FastAPI Dependencies - service wiring and authentication.

NO DICTIONARIES - All dependencies return typed objects.

Tests swap `get_billing_store` (and the provider getters) through
`app.dependency_overrides`; everything else is built on top of them.
"""

import secrets
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from structlog import get_logger

from novavid_billing.config import settings
from novavid_billing.db.session import get_session_factory
from novavid_billing.models.api import BillingProvider
from novavid_billing.services.accounts import AccountService
from novavid_billing.services.ledger import LedgerEngine
from novavid_billing.services.memory_store import MemoryBillingStore
from novavid_billing.services.paypal_provider import PayPalProvider
from novavid_billing.services.reconciler import WebhookReconciler
from novavid_billing.services.sql_store import SqlBillingStore
from novavid_billing.services.store import BillingStore
from novavid_billing.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# ============================================================================
# Service API key
# ============================================================================


async def require_service_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Callers are already-authenticated NovaVid backends; there is one shared key.
    """
    if not settings.service_api_key:
        logger.error("service_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service API key not configured",
        )

    if x_api_key is None or not secrets.compare_digest(
        x_api_key.encode(), settings.service_api_key.encode()
    ):
        logger.warning("service_api_key_rejected", key_present=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ============================================================================
# Store and services
# ============================================================================


@lru_cache
def get_billing_store() -> BillingStore:
    """Store shared by all requests, selected by `store_backend`."""
    if settings.store_backend == "memory":
        logger.warning("memory_store_selected", persistent=False)
        return MemoryBillingStore()
    return SqlBillingStore(get_session_factory())


@lru_cache
def get_stripe_provider() -> StripeProvider | None:
    """Stripe adapter, or None when Stripe is not configured."""
    if not settings.stripe_webhook_secret:
        return None
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        price_plans=settings.stripe_price_plans,
    )


@lru_cache
def get_paypal_provider() -> PayPalProvider | None:
    """PayPal adapter, or None when PayPal is not configured."""
    if not settings.paypal_webhook_id:
        return None
    return PayPalProvider(
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        webhook_id=settings.paypal_webhook_id,
        api_base=settings.paypal_api_base,
        plan_ids=settings.paypal_plan_ids,
    )


def get_ledger(store: BillingStore = Depends(get_billing_store)) -> LedgerEngine:
    return LedgerEngine(store)


def get_account_service(
    store: BillingStore = Depends(get_billing_store),
    ledger: LedgerEngine = Depends(get_ledger),
) -> AccountService:
    return AccountService(store, ledger)


def get_reconciler(
    store: BillingStore = Depends(get_billing_store),
    ledger: LedgerEngine = Depends(get_ledger),
    stripe_provider: StripeProvider | None = Depends(get_stripe_provider),
    paypal_provider: PayPalProvider | None = Depends(get_paypal_provider),
) -> WebhookReconciler:
    providers: dict[BillingProvider, StripeProvider | PayPalProvider] = {}
    if stripe_provider is not None:
        providers[BillingProvider.STRIPE] = stripe_provider
    if paypal_provider is not None:
        providers[BillingProvider.PAYPAL] = paypal_provider
    return WebhookReconciler(store, ledger, providers)
