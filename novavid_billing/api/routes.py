"""
API Routes - FastAPI endpoints for accounts and entitlements.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from structlog import get_logger

from novavid_billing.api.dependencies import (
    get_account_service,
    get_reconciler,
    require_service_key,
)
from novavid_billing.config import settings
from novavid_billing.db.session import get_session
from novavid_billing.exceptions import (
    AccountClosedError,
    AccountNotFoundError,
    ActiveSubscriptionError,
    IdempotencyConflictError,
    StorageConflictError,
)
from novavid_billing.models.api import (
    AccountResponse,
    CapabilitiesResponse,
    CreateAccountRequest,
    EntitlementResponse,
    HealthResponse,
    LinkSubscriptionRequest,
    LinkSubscriptionResponse,
    SubscriptionRefResponse,
)
from novavid_billing.models.domain import AccountData
from novavid_billing.services.accounts import AccountService
from novavid_billing.services.plan_resolver import Entitlement, effective_tier
from novavid_billing.services.reconciler import WebhookReconciler

logger = get_logger(__name__)

router = APIRouter()


def account_response(account: AccountData, now: datetime) -> AccountResponse:
    """Build the API view of an account."""
    subscription = None
    if account.subscription is not None:
        ref = account.subscription
        subscription = SubscriptionRefResponse(
            provider=ref.provider,
            customer_id=ref.customer_id,
            subscription_id=ref.subscription_id,
            status=ref.status,
            plan_key=ref.plan_key,
            period_end=ref.period_end,
            event_at=ref.event_at,
        )

    return AccountResponse(
        account_id=account.account_id,
        plan_tier=account.plan_tier,
        effective_tier=effective_tier(account, now),
        credits=account.credits,
        trial_ends_at=account.trial_ends_at,
        status=account.status,
        customer_email=account.customer_email,
        subscription=subscription,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def entitlement_response(entitlement: Entitlement) -> EntitlementResponse:
    caps = entitlement.capabilities
    return EntitlementResponse(
        account_id=entitlement.account_id,
        tier=entitlement.tier,
        plan_tier=entitlement.plan_tier,
        is_trial=entitlement.is_trial,
        trial_ends_at=entitlement.trial_ends_at,
        capabilities=CapabilitiesResponse(
            display_name=caps.display_name,
            max_video_duration_seconds=caps.max_video_duration_seconds,
            can_upload_music=caps.can_upload_music,
            music_library=caps.music_library,
            allow_cloud_save=caps.allow_cloud_save,
            max_projects=caps.max_projects,
            ai_credit_ceiling=caps.ai_credit_ceiling,
        ),
    )


@router.post(
    "/v1/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_service_key)],
)
async def create_account(
    request: CreateAccountRequest,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    """
    Register an account.

    Idempotent: repeating the call returns the existing account and never
    re-grants signup credits or the trial.
    """
    try:
        account = await service.register(request.account_id, request.customer_email)
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update, retry",
        ) from exc
    return account_response(account, service.clock())


@router.get(
    "/v1/accounts/{account_id}",
    response_model=AccountResponse,
    dependencies=[Depends(require_service_key)],
)
async def get_account(
    account_id: str,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = await service.get_account(account_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    return account_response(account, service.clock())


@router.get(
    "/v1/accounts/{account_id}/entitlement",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_service_key)],
)
async def get_entitlement(
    account_id: str,
    service: AccountService = Depends(get_account_service),
) -> EntitlementResponse:
    """
    Read-only entitlement for display.

    Server-side checks use the same resolver; this view grants nothing.
    """
    try:
        entitlement = await service.get_entitlement(account_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    return entitlement_response(entitlement)


@router.post(
    "/v1/accounts/{account_id}/close",
    response_model=AccountResponse,
    dependencies=[Depends(require_service_key)],
)
async def close_account(
    account_id: str,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = await service.close_account(account_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except ActiveSubscriptionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update, retry",
        ) from exc
    return account_response(account, service.clock())


@router.post(
    "/v1/accounts/{account_id}/subscription-link",
    response_model=LinkSubscriptionResponse,
    dependencies=[Depends(require_service_key)],
)
async def link_subscription(
    account_id: str,
    request: LinkSubscriptionRequest,
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> LinkSubscriptionResponse:
    """
    Link a provider customer created by the checkout flow to an account.

    Webhook events parked for that customer are replayed immediately.
    """
    try:
        summary = await reconciler.link_customer(
            account_id, request.provider, request.customer_id, request.subscription_id
        )
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except AccountClosedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Account is closed",
        ) from exc
    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update, retry",
        ) from exc

    return LinkSubscriptionResponse(
        account_id=account_id,
        provider=request.provider,
        customer_id=request.customer_id,
        reprocessed_events=summary.applied,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    if settings.store_backend == "memory":
        return HealthResponse(status="healthy", database="memory", timestamp=datetime.now(UTC))

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC),
    )
