"""
Webhook routes - Stripe and PayPal subscription notifications.

Providers deliver at least once and retry on non-2xx, so the status code is
the retry policy: 200 when the event needs no redelivery, 202 when it was
parked for later, 5xx when the provider should try again.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from structlog import get_logger

from novavid_billing.api.dependencies import get_reconciler
from novavid_billing.exceptions import (
    AccountFrozenError,
    MalformedEventError,
    PaymentProviderError,
    StorageConflictError,
    WebhookVerificationError,
)
from novavid_billing.models.api import BillingProvider, IngestOutcome, WebhookResponse
from novavid_billing.observability.metrics import metrics
from novavid_billing.services.reconciler import WebhookReconciler

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


async def _handle_webhook(
    provider: BillingProvider,
    request: Request,
    response: Response,
    reconciler: WebhookReconciler,
) -> WebhookResponse:
    adapter = reconciler.providers.get(provider)
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )

    payload = await request.body()

    try:
        raw_event = await adapter.verify_webhook(payload, request.headers)
    except WebhookVerificationError as exc:
        metrics.record_webhook_event(provider.value, "rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification unavailable",
        ) from exc

    try:
        result = await reconciler.ingest(provider, raw_event)
    except MalformedEventError as exc:
        metrics.record_webhook_event(provider.value, "malformed")
        logger.error("webhook_event_malformed", provider=provider.value, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except (StorageConflictError, AccountFrozenError) as exc:
        logger.warning(
            "webhook_event_deferred",
            provider=provider.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event not applied, redeliver later",
        ) from exc

    if result.outcome == IngestOutcome.PARKED:
        response.status_code = status.HTTP_202_ACCEPTED

    return WebhookResponse(status="ok", event_id=result.event_id, outcome=result.outcome)


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    response: Response,
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> WebhookResponse:
    """Handle Stripe subscription and checkout events."""
    return await _handle_webhook(BillingProvider.STRIPE, request, response, reconciler)


@router.post("/paypal", response_model=WebhookResponse)
async def paypal_webhook(
    request: Request,
    response: Response,
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> WebhookResponse:
    """Handle PayPal BILLING.SUBSCRIPTION.* events."""
    return await _handle_webhook(BillingProvider.PAYPAL, request, response, reconciler)
