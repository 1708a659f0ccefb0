"""
PostgreSQL Billing Store - async SQLAlchemy implementation of the unit of work.

Per-account serialization uses row locks (SELECT FOR UPDATE); the session's
transaction makes every unit of work atomic.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from novavid_billing.db.models import (
    Account,
    Base,
    CreditReservation,
    LedgerEntry,
    ParkedEvent,
    ProcessedEvent,
)
from novavid_billing.exceptions import StorageConflictError

logger = get_logger(__name__)

T = TypeVar("T")

# lock_not_available, serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = frozenset({"55P03", "40001", "40P01"})


def _is_transient(exc: DBAPIError) -> bool:
    """Whether a driver error is worth retrying with the same idempotency key."""
    if isinstance(exc, (IntegrityError, OperationalError)):
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return sqlstate in _TRANSIENT_SQLSTATES


class SqlUnitOfWork:
    """Unit of work bound to one AsyncSession transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _guard(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except DBAPIError as exc:
            if not _is_transient(exc):
                raise
            logger.warning(
                "storage_conflict",
                operation=operation,
                error=str(exc.orig),
                error_type=type(exc).__name__,
            )
            await self.session.rollback()
            raise StorageConflictError(f"{operation}: {exc.orig}") from exc

    async def _scalar(self, operation: str, stmt: Select[Any]) -> Any:
        result = await self._guard(operation, lambda: self.session.execute(stmt))
        return result.scalar_one_or_none()

    async def _scalars(self, operation: str, stmt: Select[Any]) -> list[Any]:
        result = await self._guard(operation, lambda: self.session.execute(stmt))
        return list(result.scalars().all())

    async def get_account(self, account_id: str) -> Account | None:
        return await self._scalar("get_account", select(Account).where(Account.id == account_id))

    async def lock_account(self, account_id: str) -> Account | None:
        stmt = select(Account).where(Account.id == account_id).with_for_update()
        return await self._scalar("lock_account", stmt)

    async def find_account_by_customer(self, provider: str, customer_id: str) -> Account | None:
        stmt = select(Account).where(
            Account.sub_provider == provider,
            Account.sub_customer_id == customer_id,
        )
        return await self._scalar("find_account_by_customer", stmt)

    async def find_reservation(
        self, account_id: str, operation_id: str
    ) -> CreditReservation | None:
        stmt = select(CreditReservation).where(
            CreditReservation.account_id == account_id,
            CreditReservation.operation_id == operation_id,
        )
        return await self._scalar("find_reservation", stmt)

    async def list_expired_reservations(
        self, now: datetime, limit: int
    ) -> list[CreditReservation]:
        stmt = (
            select(CreditReservation)
            .where(
                CreditReservation.state == "held",
                CreditReservation.expires_at <= now,
            )
            .order_by(CreditReservation.expires_at)
            .limit(limit)
        )
        return await self._scalars("list_expired_reservations", stmt)

    async def find_ledger_entry(
        self, account_id: str, reason: str, operation_id: str
    ) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.reason == reason,
            LedgerEntry.operation_id == operation_id,
        )
        return await self._scalar("find_ledger_entry", stmt)

    async def list_ledger_entries(self, account_id: str) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at, LedgerEntry.id)
        )
        return await self._scalars("list_ledger_entries", stmt)

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        stmt = select(ProcessedEvent.id).where(
            ProcessedEvent.provider == provider,
            ProcessedEvent.external_event_id == event_id,
        )
        return await self._scalar("is_event_processed", stmt) is not None

    async def find_parked_event(self, provider: str, event_id: str) -> ParkedEvent | None:
        stmt = select(ParkedEvent).where(
            ParkedEvent.provider == provider,
            ParkedEvent.external_event_id == event_id,
        )
        return await self._scalar("find_parked_event", stmt)

    async def list_parked_events(
        self,
        limit: int,
        due_before: datetime | None = None,
        provider: str | None = None,
        customer_id: str | None = None,
    ) -> list[ParkedEvent]:
        stmt = select(ParkedEvent)
        if due_before is not None:
            stmt = stmt.where(ParkedEvent.next_attempt_at <= due_before)
        if provider is not None:
            stmt = stmt.where(ParkedEvent.provider == provider)
        if customer_id is not None:
            stmt = stmt.where(ParkedEvent.customer_id == customer_id)
        stmt = stmt.order_by(ParkedEvent.occurred_at).limit(limit)
        return await self._scalars("list_parked_events", stmt)

    def add(self, record: Base) -> None:
        self.session.add(record)

    async def delete(self, record: Base) -> None:
        await self.session.delete(record)

    async def commit(self) -> None:
        await self._guard("flush", self.session.flush)
        await self._guard("commit", self.session.commit)

    async def rollback(self) -> None:
        await self.session.rollback()


class SqlBillingStore:
    """BillingStore backed by PostgreSQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self.session_factory() as session:
            uow = SqlUnitOfWork(session)
            try:
                yield uow
            finally:
                # No-op after commit; releases row locks otherwise
                await session.rollback()
