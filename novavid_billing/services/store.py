"""
Billing Store Protocol - storage-agnostic unit of work.

The ledger, account service and reconciler are written once against this
interface. Every mutation happens inside one unit of work; `lock_account`
is the per-account serialization point and is held until the unit of work
ends. Leaving the block without `commit()` discards all staged changes.
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol

from novavid_billing.db.models import (
    Account,
    Base,
    CreditReservation,
    LedgerEntry,
    ParkedEvent,
)


class BillingUnitOfWork(Protocol):
    """One atomic batch of reads and writes."""

    async def get_account(self, account_id: str) -> Account | None:
        """Read an account without locking it."""
        ...

    async def lock_account(self, account_id: str) -> Account | None:
        """Read an account and hold its lock until the unit of work ends."""
        ...

    async def find_account_by_customer(self, provider: str, customer_id: str) -> Account | None:
        """Find the account linked to a provider customer id."""
        ...

    async def find_reservation(
        self, account_id: str, operation_id: str
    ) -> CreditReservation | None:
        """Find a reservation by its idempotency key."""
        ...

    async def list_expired_reservations(
        self, now: datetime, limit: int
    ) -> list[CreditReservation]:
        """Held reservations whose deadline has passed, oldest first."""
        ...

    async def find_ledger_entry(
        self, account_id: str, reason: str, operation_id: str
    ) -> LedgerEntry | None:
        """Find a ledger entry by its idempotency key."""
        ...

    async def list_ledger_entries(self, account_id: str) -> list[LedgerEntry]:
        """All ledger entries for an account in insertion order."""
        ...

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        """Whether a provider event was already recorded."""
        ...

    async def find_parked_event(self, provider: str, event_id: str) -> ParkedEvent | None:
        """Find a parked event by provider id."""
        ...

    async def list_parked_events(
        self,
        limit: int,
        due_before: datetime | None = None,
        provider: str | None = None,
        customer_id: str | None = None,
    ) -> list[ParkedEvent]:
        """Parked events, optionally only due ones or only one customer's."""
        ...

    def add(self, record: Base) -> None:
        """Stage a new record."""
        ...

    async def delete(self, record: Base) -> None:
        """Stage a record for deletion."""
        ...

    async def commit(self) -> None:
        """
        Apply staged changes atomically.

        Raises:
            StorageConflictError: Unique-key race, lock timeout or serialization failure
        """
        ...

    async def rollback(self) -> None:
        """Discard staged changes."""
        ...


class BillingStore(Protocol):
    """Factory for units of work."""

    def unit_of_work(self) -> AbstractAsyncContextManager[BillingUnitOfWork]:
        """Open a unit of work."""
        ...
