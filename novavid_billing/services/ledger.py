"""
Ledger Engine - reserve, release, settle and grant credits.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance change writes exactly one ledger entry in the same unit of
work, under the account's lock, so `credits` always equals the sum of the
account's ledger deltas. Reservations are idempotent on
(account_id, operation_id) and refunds are idempotent per reservation.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from uuid import uuid4

from structlog import get_logger

from novavid_billing.config import Settings, settings
from novavid_billing.db.models import Account, CreditReservation, LedgerEntry, utc_now
from novavid_billing.exceptions import (
    AccountClosedError,
    AccountFrozenError,
    AccountNotFoundError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvariantViolationError,
    ReservationNotFoundError,
)
from novavid_billing.models.api import (
    AccountStatus,
    LedgerReason,
    PlanTier,
    ReservationState,
)
from novavid_billing.models.domain import LedgerEntryData, LedgerReport, Reservation
from novavid_billing.observability.metrics import metrics
from novavid_billing.observability.tracing import trace_operation
from novavid_billing.services.store import BillingStore, BillingUnitOfWork

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def reservation_to_domain(
    record: CreditReservation, balance_after: int, replayed: bool = False
) -> Reservation:
    """Convert ORM reservation to domain model."""
    return Reservation(
        reservation_id=record.id,
        account_id=record.account_id,
        operation_id=record.operation_id,
        amount=record.amount,
        state=ReservationState(record.state),
        created_at=record.created_at,
        expires_at=record.expires_at,
        balance_after=balance_after,
        replayed=replayed,
    )


def entry_to_domain(entry: LedgerEntry) -> LedgerEntryData:
    """Convert ORM ledger entry to domain model."""
    return LedgerEntryData(
        entry_id=entry.id,
        account_id=entry.account_id,
        delta=entry.delta,
        reason=LedgerReason(entry.reason),
        operation_id=entry.operation_id,
        balance_after=entry.balance_after,
        description=entry.description or "",
        created_at=entry.created_at,
    )


class LedgerEngine:
    """
    Credit ledger over a BillingStore.

    A reservation debits immediately. The caller then either settles it
    (work succeeded, debit stands) or releases it (work failed, refund).
    Reservations nobody resolves are released by `sweep_expired`.
    """

    def __init__(
        self,
        store: BillingStore,
        config: Settings = settings,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    # ========================================================================
    # Reservations
    # ========================================================================

    async def reserve(self, account_id: str, amount: int, operation_id: str) -> Reservation:
        """
        Debit `amount` credits for one metered operation.

        Repeating a reserve with the same operation id returns the original
        reservation without debiting again.

        Raises:
            ValueError: amount is not positive or operation_id is empty
            AccountNotFoundError: Account doesn't exist
            AccountClosedError: Account is closed
            AccountFrozenError: Account is frozen
            InsufficientCreditsError: Balance is below amount
            IdempotencyConflictError: Operation id reused with a different amount
            StorageConflictError: Lock timeout or concurrent write
        """
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive: {amount}")
        if not operation_id:
            raise ValueError("operation_id cannot be empty")

        with trace_operation(
            "ledger.reserve", account_id=account_id, amount=amount, operation_id=operation_id
        ):
            async with self._freeze_on_violation(account_id), self.store.unit_of_work() as uow:
                account = await self._lock_mutable(uow, account_id)

                existing = await uow.find_reservation(account_id, operation_id)
                if existing is not None:
                    if existing.amount != amount:
                        raise IdempotencyConflictError(
                            operation_id,
                            f"Operation {operation_id} was reserved for {existing.amount}, "
                            f"not {amount}",
                        )
                    metrics.record_reservation("replayed", amount)
                    logger.info(
                        "reservation_replayed",
                        account_id=account_id,
                        operation_id=operation_id,
                        state=existing.state,
                    )
                    return reservation_to_domain(existing, account.credits, replayed=True)

                now = self.clock()

                if account.credits < amount and self._auto_recharge_applies(account):
                    top_up = self.config.pro_auto_recharge_balance - account.credits
                    if top_up > 0:
                        self.apply_delta(
                            uow,
                            account,
                            top_up,
                            LedgerReason.GRANT,
                            f"recharge:{operation_id}",
                            "Pro auto-recharge",
                            now,
                        )
                        logger.info(
                            "pro_auto_recharge",
                            account_id=account_id,
                            operation_id=operation_id,
                            amount=top_up,
                        )

                if account.credits < amount:
                    metrics.record_reservation("insufficient", amount)
                    logger.info(
                        "reservation_insufficient_credits",
                        account_id=account_id,
                        operation_id=operation_id,
                        balance=account.credits,
                        required=amount,
                    )
                    raise InsufficientCreditsError(account.credits, amount)

                self.apply_delta(
                    uow,
                    account,
                    -amount,
                    LedgerReason.DEBIT,
                    operation_id,
                    f"Reserved for operation {operation_id}",
                    now,
                )
                record = CreditReservation(
                    id=uuid4(),
                    account_id=account_id,
                    operation_id=operation_id,
                    amount=amount,
                    state=ReservationState.HELD.value,
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.config.reservation_ttl_seconds),
                    resolved_at=None,
                )
                uow.add(record)
                await uow.commit()

                reservation = reservation_to_domain(record, account.credits)

        metrics.record_reservation("reserved", amount)
        logger.info(
            "credits_reserved",
            account_id=account_id,
            operation_id=operation_id,
            amount=amount,
            balance_after=reservation.balance_after,
        )
        return reservation

    async def release(self, reservation: Reservation) -> Reservation:
        """
        Refund a held reservation.

        Releasing a reservation that is already settled or released is a
        no-op. The refund is always the amount recorded at reserve time.
        """
        released, _ = await self._release(
            reservation.account_id, reservation.operation_id, "Refund for failed operation"
        )
        return released

    async def settle(self, reservation: Reservation) -> Reservation:
        """
        Mark a held reservation as consumed. The debit stands.

        Settling an already-resolved reservation is a no-op.
        """
        account_id = reservation.account_id
        operation_id = reservation.operation_id

        with trace_operation("ledger.settle", account_id=account_id, operation_id=operation_id):
            async with self.store.unit_of_work() as uow:
                account = await uow.lock_account(account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)

                record = await uow.find_reservation(account_id, operation_id)
                if record is None:
                    raise ReservationNotFoundError(account_id, operation_id)

                if record.state != ReservationState.HELD.value:
                    logger.debug(
                        "settle_noop", account_id=account_id, operation_id=operation_id,
                        state=record.state,
                    )
                    return reservation_to_domain(record, account.credits)

                record.state = ReservationState.SETTLED.value
                record.resolved_at = self.clock()
                await uow.commit()
                settled = reservation_to_domain(record, account.credits)

        metrics.record_resolution("settled")
        logger.info("reservation_settled", account_id=account_id, operation_id=operation_id)
        return settled

    async def expired_reservations(self, now: datetime, limit: int) -> list[Reservation]:
        """Held reservations whose deadline is at or before `now`, oldest first."""
        async with self.store.unit_of_work() as uow:
            records = await uow.list_expired_reservations(now, limit)
            return [reservation_to_domain(r, balance_after=0) for r in records]

    async def sweep_expired(self, now: datetime | None = None, limit: int | None = None) -> int:
        """
        Release held reservations past their deadline.

        Each reservation is released in its own unit of work; a failure on
        one account does not stop the rest of the batch.

        Returns:
            Number of reservations released by this pass
        """
        batch = limit if limit is not None else self.config.sweep_batch_size
        expired = [
            (r.account_id, r.operation_id)
            for r in await self.expired_reservations(now or self.clock(), batch)
        ]

        released = 0
        for account_id, operation_id in expired:
            try:
                _, changed = await self._release(
                    account_id, operation_id, "Refund for expired reservation"
                )
            except (AccountFrozenError, InvariantViolationError) as e:
                # Frozen accounts wait for manual reconciliation
                logger.warning(
                    "sweep_release_skipped",
                    account_id=account_id,
                    operation_id=operation_id,
                    error=str(e),
                )
                metrics.record_error(type(e).__name__, "sweep_expired")
                continue
            if changed:
                released += 1

        if released:
            metrics.sweep_released_total.inc(released)
        logger.info("reservation_sweep_completed", expired=len(expired), released=released)
        return released

    async def _release(
        self, account_id: str, operation_id: str, description: str
    ) -> tuple[Reservation, bool]:
        with trace_operation("ledger.release", account_id=account_id, operation_id=operation_id):
            async with self._freeze_on_violation(account_id), self.store.unit_of_work() as uow:
                account = await self._lock_mutable(uow, account_id, allow_closed=True)

                record = await uow.find_reservation(account_id, operation_id)
                if record is None:
                    raise ReservationNotFoundError(account_id, operation_id)

                if record.state != ReservationState.HELD.value:
                    logger.debug(
                        "release_noop", account_id=account_id, operation_id=operation_id,
                        state=record.state,
                    )
                    return reservation_to_domain(record, account.credits), False

                now = self.clock()
                self.apply_delta(
                    uow,
                    account,
                    record.amount,
                    LedgerReason.REFUND,
                    operation_id,
                    description,
                    now,
                )
                record.state = ReservationState.RELEASED.value
                record.resolved_at = now
                await uow.commit()
                released = reservation_to_domain(record, account.credits)

        metrics.record_resolution("released")
        logger.info(
            "reservation_released",
            account_id=account_id,
            operation_id=operation_id,
            amount=released.amount,
            balance_after=released.balance_after,
        )
        return released, True

    # ========================================================================
    # Grants
    # ========================================================================

    async def grant(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason = LedgerReason.GRANT,
        description: str = "",
        idempotency_key: str | None = None,
    ) -> LedgerEntryData:
        """
        Add credits to an account.

        With an idempotency key, repeating the grant returns the first entry.

        Raises:
            ValueError: amount is not positive or reason is not a grant reason
            AccountNotFoundError: Account doesn't exist
            AccountClosedError: Account is closed
            AccountFrozenError: Account is frozen
        """
        if amount <= 0:
            raise ValueError(f"Grant amount must be positive: {amount}")
        if reason not in (LedgerReason.GRANT, LedgerReason.TRIAL_GRANT):
            raise ValueError(f"Not a grant reason: {reason}")

        with trace_operation("ledger.grant", account_id=account_id, amount=amount):
            async with self._freeze_on_violation(account_id), self.store.unit_of_work() as uow:
                account = await self._lock_mutable(uow, account_id)

                if idempotency_key is not None:
                    existing = await uow.find_ledger_entry(
                        account_id, reason.value, idempotency_key
                    )
                    if existing is not None:
                        if existing.delta != amount:
                            raise IdempotencyConflictError(
                                idempotency_key,
                                f"Grant {idempotency_key} was {existing.delta}, not {amount}",
                            )
                        logger.info(
                            "grant_replayed", account_id=account_id, key=idempotency_key
                        )
                        return entry_to_domain(existing)

                entry = self.apply_delta(
                    uow,
                    account,
                    amount,
                    reason,
                    idempotency_key,
                    description,
                    self.clock(),
                )
                await uow.commit()

        return entry_to_domain(entry)

    def apply_delta(
        self,
        uow: BillingUnitOfWork,
        account: Account,
        delta: int,
        reason: LedgerReason,
        operation_id: str | None,
        description: str,
        now: datetime,
    ) -> LedgerEntry:
        """
        Stage a balance change and its ledger entry on a locked account.

        For callers that already hold the account lock inside `uow`; the
        caller commits.
        """
        new_balance = account.credits + delta
        if new_balance < 0:
            raise InvariantViolationError(
                account.id, f"delta {delta} would take balance {account.credits} negative"
            )

        account.credits = new_balance
        account.updated_at = now

        entry = LedgerEntry(
            id=uuid4(),
            account_id=account.id,
            delta=delta,
            reason=reason.value,
            operation_id=operation_id,
            balance_after=new_balance,
            description=description,
            created_at=now,
        )
        uow.add(entry)

        if delta > 0:
            metrics.record_grant(reason.value, delta)
        return entry

    # ========================================================================
    # Verification
    # ========================================================================

    async def verify_ledger(self, account_id: str, freeze_on_mismatch: bool = True) -> LedgerReport:
        """
        Compare the live balance against the sum of ledger deltas.

        An unbalanced account is frozen unless `freeze_on_mismatch` is False.
        Balance and entries are read under the account lock so a concurrent
        mutation cannot land between the two reads.
        """
        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            entries = await uow.list_ledger_entries(account_id)

        report = LedgerReport(
            account_id=account_id,
            credits=account.credits,
            ledger_total=sum(e.delta for e in entries),
            entries=tuple(entry_to_domain(e) for e in entries),
        )
        if not report.balanced:
            logger.error(
                "ledger_unbalanced",
                account_id=account_id,
                credits=report.credits,
                ledger_total=report.ledger_total,
            )
            if freeze_on_mismatch and account.status == AccountStatus.ACTIVE.value:
                await self.freeze(
                    account_id,
                    f"balance {report.credits} != ledger total {report.ledger_total}",
                )
        return report

    # ========================================================================
    # Helpers
    # ========================================================================

    def _auto_recharge_applies(self, account: Account) -> bool:
        return (
            self.config.pro_auto_recharge_enabled
            and account.plan_tier == PlanTier.PRO.value
        )

    async def _lock_mutable(
        self, uow: BillingUnitOfWork, account_id: str, allow_closed: bool = False
    ) -> Account:
        account = await uow.lock_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        if account.status == AccountStatus.FROZEN.value:
            raise AccountFrozenError(account_id)
        if account.status == AccountStatus.CLOSED.value and not allow_closed:
            raise AccountClosedError(account_id)
        return account

    async def freeze(self, account_id: str, message: str) -> None:
        """Halt all credit mutation on an account until it is reconciled."""
        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            account.status = AccountStatus.FROZEN.value
            account.updated_at = self.clock()
            await uow.commit()

        metrics.invariant_violations_total.inc()
        logger.error("account_frozen_invariant_violation", account_id=account_id, reason=message)

    @asynccontextmanager
    async def _freeze_on_violation(self, account_id: str) -> AsyncIterator[None]:
        try:
            yield
        except InvariantViolationError as e:
            await self.freeze(account_id, str(e))
            raise
