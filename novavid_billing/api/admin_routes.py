"""
Admin API routes for manual reconciliation.

Protected by the service API key. Every action here is logged at warning
level so it stands out in the audit trail.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from structlog import get_logger

from novavid_billing.api.dependencies import (
    get_account_service,
    get_ledger,
    get_reconciler,
    require_service_key,
)
from novavid_billing.api.routes import account_response
from novavid_billing.exceptions import (
    AccountClosedError,
    AccountFrozenError,
    AccountNotFoundError,
    IdempotencyConflictError,
    InvariantViolationError,
    StorageConflictError,
)
from novavid_billing.models.api import (
    AccountResponse,
    GrantRequest,
    LedgerEntryResponse,
    LedgerReason,
    LedgerResponse,
    ParkedRetryResponse,
    SetPlanRequest,
    SweepResponse,
)
from novavid_billing.models.domain import LedgerEntryData
from novavid_billing.services.accounts import AccountService
from novavid_billing.services.ledger import LedgerEngine
from novavid_billing.services.reconciler import WebhookReconciler

logger = get_logger(__name__)
router = APIRouter(
    prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_service_key)]
)


def _entry_response(entry: LedgerEntryData) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        entry_id=str(entry.entry_id),
        delta=entry.delta,
        reason=entry.reason,
        operation_id=entry.operation_id,
        balance_after=entry.balance_after,
        description=entry.description,
        created_at=entry.created_at,
    )


# ============================================================================
# Ledger
# ============================================================================


@router.get("/accounts/{account_id}/ledger", response_model=LedgerResponse)
async def get_ledger_report(
    account_id: str,
    freeze: bool = Query(False, description="Freeze the account if it is unbalanced"),
    ledger: LedgerEngine = Depends(get_ledger),
) -> LedgerResponse:
    """All ledger entries with the balance reconciliation check."""
    try:
        report = await ledger.verify_ledger(account_id, freeze_on_mismatch=freeze)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc

    return LedgerResponse(
        account_id=report.account_id,
        credits=report.credits,
        ledger_total=report.ledger_total,
        balanced=report.balanced,
        entries=[_entry_response(e) for e in report.entries],
    )


@router.post(
    "/accounts/{account_id}/grants",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_credits(
    account_id: str,
    request: GrantRequest,
    ledger: LedgerEngine = Depends(get_ledger),
) -> LedgerEntryResponse:
    try:
        entry = await ledger.grant(
            account_id,
            request.amount,
            reason=LedgerReason.GRANT,
            description=request.description,
            idempotency_key=request.idempotency_key,
        )
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except (AccountClosedError, IdempotencyConflictError) as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except AccountFrozenError as exc:
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="Account is frozen",
        ) from exc
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update, retry",
        ) from exc

    logger.warning(
        "admin_credits_granted",
        account_id=account_id,
        amount=request.amount,
        description=request.description,
    )
    return _entry_response(entry)


# ============================================================================
# Account overrides
# ============================================================================


@router.post("/accounts/{account_id}/plan", response_model=AccountResponse)
async def set_plan(
    account_id: str,
    request: SetPlanRequest,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = await service.set_plan_tier(account_id, request.plan_tier, request.reason)
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
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update, retry",
        ) from exc
    return account_response(account, service.clock())


@router.post("/accounts/{account_id}/unfreeze", response_model=AccountResponse)
async def unfreeze_account(
    account_id: str,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    """Lift a freeze once the balance matches the ledger again."""
    try:
        account = await service.unfreeze(account_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except InvariantViolationError as exc:
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


# ============================================================================
# Maintenance
# ============================================================================


@router.post("/reservations/sweep", response_model=SweepResponse)
async def sweep_reservations(
    limit: int | None = Query(None, ge=1, le=10000),
    ledger: LedgerEngine = Depends(get_ledger),
) -> SweepResponse:
    """Release expired reservations now instead of waiting for the sweeper."""
    released = await ledger.sweep_expired(limit=limit)
    logger.warning("admin_sweep_triggered", released=released)
    return SweepResponse(released=released)


@router.post("/parked-events/retry", response_model=ParkedRetryResponse)
async def retry_parked_events(
    limit: int | None = Query(None, ge=1, le=10000),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> ParkedRetryResponse:
    summary = await reconciler.reprocess_parked(limit=limit)
    logger.warning(
        "admin_parked_retry_triggered",
        attempted=summary.attempted,
        applied=summary.applied,
    )
    return ParkedRetryResponse(
        attempted=summary.attempted,
        applied=summary.applied,
        still_parked=summary.still_parked,
    )
