"""
Metered Operation Gateway - run billable work under a credit reservation.

Reserve, run the work, then settle on success or release on failure. No
failure path (exception, timeout or cancellation) leaves credits debited
without either a settle or a release being attempted.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from structlog import get_logger

from novavid_billing.config import settings
from novavid_billing.exceptions import (
    BillingError,
    InsufficientCreditsError,
    OperationInProgressError,
    ReservationResolvedError,
    WorkFailureError,
)
from novavid_billing.models.api import MeteredOutcome, ReservationState
from novavid_billing.models.domain import MeteredResult, Reservation
from novavid_billing.observability.metrics import metrics
from novavid_billing.services.ledger import LedgerEngine

logger = get_logger(__name__)

T = TypeVar("T")


class MeteredOperationGateway:
    """Wraps billable work so credits are charged only for work that completes."""

    def __init__(
        self,
        ledger: LedgerEngine,
        timeout_seconds: float | None = settings.metered_work_timeout_seconds,
    ) -> None:
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds

    async def with_credits(
        self,
        account_id: str,
        cost: int,
        operation_id: str,
        work: Callable[[], Awaitable[T]],
    ) -> MeteredResult[T]:
        """
        Run `work` after reserving `cost` credits.

        Returns:
            COMPLETED with the work's value, or INSUFFICIENT_CREDITS without
            calling `work`

        Raises:
            WorkFailureError: work raised or timed out; the reservation was released
            ReservationResolvedError: operation_id was already settled or released
            OperationInProgressError: operation_id is held by a call still running
            AccountNotFoundError / AccountClosedError / AccountFrozenError
        """
        try:
            reservation = await self.ledger.reserve(account_id, cost, operation_id)
        except InsufficientCreditsError as e:
            return MeteredResult(
                outcome=MeteredOutcome.INSUFFICIENT_CREDITS,
                operation_id=operation_id,
                balance=e.balance,
                required=e.required,
            )

        if reservation.replayed:
            # Only the call that created the hold may settle or release it
            if reservation.state == ReservationState.HELD:
                raise OperationInProgressError(operation_id)
            raise ReservationResolvedError(operation_id, reservation.state.value)

        try:
            if self.timeout_seconds is not None:
                value = await asyncio.wait_for(work(), timeout=self.timeout_seconds)
            else:
                value = await work()
        except asyncio.CancelledError:
            logger.warning(
                "metered_work_cancelled", account_id=account_id, operation_id=operation_id
            )
            await asyncio.shield(self._release_after_failure(reservation))
            raise
        except Exception as e:
            logger.warning(
                "metered_work_failed",
                account_id=account_id,
                operation_id=operation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release_after_failure(reservation)
            raise WorkFailureError(operation_id, e) from e

        try:
            settled = await self.ledger.settle(reservation)
        except BillingError as e:
            # Work already happened; the expiry sweep will refund the hold
            logger.error(
                "metered_settle_failed",
                account_id=account_id,
                operation_id=operation_id,
                error=str(e),
            )
            settled = reservation

        if settled.state == ReservationState.RELEASED:
            settled = await self._charge_late(settled)

        return MeteredResult(
            outcome=MeteredOutcome.COMPLETED,
            operation_id=operation_id,
            value=value,
            reservation=settled,
            balance=settled.balance_after,
        )

    async def _charge_late(self, released: Reservation) -> Reservation:
        """
        Debit again for work that finished after its hold expired.

        The expiry sweep refunded the original hold while the work was still
        running; the late charge gets its own operation id.
        """
        late_id = f"{released.operation_id}:late"
        logger.warning(
            "metered_hold_expired_before_settle",
            account_id=released.account_id,
            operation_id=released.operation_id,
            amount=released.amount,
        )
        try:
            late = await self.ledger.reserve(released.account_id, released.amount, late_id)
            return await self.ledger.settle(late)
        except BillingError as e:
            logger.error(
                "metered_late_charge_failed",
                account_id=released.account_id,
                operation_id=late_id,
                amount=released.amount,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "metered_late_charge")
            return released

    async def _release_after_failure(self, reservation: Reservation) -> None:
        try:
            await self.ledger.release(reservation)
        except BillingError as e:
            # Reservation stays held; the expiry sweep refunds it
            logger.error(
                "metered_release_failed",
                account_id=reservation.account_id,
                operation_id=reservation.operation_id,
                error=str(e),
            )
