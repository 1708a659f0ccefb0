"""
In-Memory Billing Store - single-process implementation of the unit of work.

Used for local development and the test suite. Records are the same ORM
classes the PostgreSQL store persists, held detached from any session.
Each unit of work edits private copies and publishes them on commit, so an
abandoned unit of work leaves no trace. Per-account serialization is an
asyncio.Lock per account id, which only serializes within one event loop.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from sqlalchemy import inspect

from novavid_billing.db.models import (
    Account,
    Base,
    CreditReservation,
    LedgerEntry,
    ParkedEvent,
    ProcessedEvent,
)
from novavid_billing.exceptions import StorageConflictError

R = TypeVar("R", bound=Base)

# Mirrors the unique constraints declared on the tables
_UNIQUE_KEYS: dict[type[Base], Callable[[Any], tuple[Any, ...] | None]] = {
    Account: lambda r: (
        (r.sub_provider, r.sub_customer_id)
        if r.sub_provider is not None and r.sub_customer_id is not None
        else None
    ),
    LedgerEntry: lambda r: (
        (r.account_id, r.reason, r.operation_id) if r.operation_id is not None else None
    ),
    CreditReservation: lambda r: (r.account_id, r.operation_id),
    ProcessedEvent: lambda r: (r.provider, r.external_event_id),
    ParkedEvent: lambda r: (r.provider, r.external_event_id),
}


def _clone(record: R) -> R:
    cls = type(record)
    return cls(**{attr.key: getattr(record, attr.key) for attr in inspect(cls).column_attrs})


class MemoryUnitOfWork:
    """Copy-on-read unit of work over a MemoryBillingStore."""

    def __init__(self, store: "MemoryBillingStore") -> None:
        self._store = store
        self._working: dict[tuple[type[Base], Any], Base] = {}
        self._added: set[tuple[type[Base], Any]] = set()
        self._deleted: set[tuple[type[Base], Any]] = set()
        self._held: list[asyncio.Lock] = []

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _checkout(self, record: R) -> R:
        key = (type(record), record.id)
        if key not in self._working:
            self._working[key] = _clone(record)
        return self._working[key]  # type: ignore[return-value]

    def _view(self, cls: type[R]) -> list[R]:
        rows: dict[Any, Base] = dict(self._store._tables[cls])
        for (kind, pk), record in self._working.items():
            if kind is cls:
                rows[pk] = record
        for kind, pk in self._deleted:
            if kind is cls:
                rows.pop(pk, None)
        return list(rows.values())  # type: ignore[arg-type]

    def _select(self, cls: type[R], predicate: Callable[[R], bool]) -> list[R]:
        return [self._checkout(r) for r in self._view(cls) if predicate(r)]

    def _first(self, cls: type[R], predicate: Callable[[R], bool]) -> R | None:
        matches = self._select(cls, predicate)
        return matches[0] if matches else None

    def release_locks(self) -> None:
        while self._held:
            self._held.pop().release()

    # ------------------------------------------------------------------
    # BillingUnitOfWork
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> Account | None:
        return self._first(Account, lambda a: a.id == account_id)

    async def lock_account(self, account_id: str) -> Account | None:
        lock = self._store._lock_for(account_id)
        if lock not in self._held:
            await lock.acquire()
            self._held.append(lock)
            key = (Account, account_id)
            if key not in self._added:
                # Re-read under the lock; an earlier unlocked copy may be stale
                self._working.pop(key, None)
        return await self.get_account(account_id)

    async def find_account_by_customer(self, provider: str, customer_id: str) -> Account | None:
        return self._first(
            Account,
            lambda a: a.sub_provider == provider and a.sub_customer_id == customer_id,
        )

    async def find_reservation(
        self, account_id: str, operation_id: str
    ) -> CreditReservation | None:
        return self._first(
            CreditReservation,
            lambda r: r.account_id == account_id and r.operation_id == operation_id,
        )

    async def list_expired_reservations(
        self, now: datetime, limit: int
    ) -> list[CreditReservation]:
        expired = [
            r for r in self._view(CreditReservation) if r.state == "held" and r.expires_at <= now
        ]
        expired.sort(key=lambda r: r.expires_at)
        return [self._checkout(r) for r in expired[:limit]]

    async def find_ledger_entry(
        self, account_id: str, reason: str, operation_id: str
    ) -> LedgerEntry | None:
        return self._first(
            LedgerEntry,
            lambda e: e.account_id == account_id
            and e.reason == reason
            and e.operation_id == operation_id,
        )

    async def list_ledger_entries(self, account_id: str) -> list[LedgerEntry]:
        entries = [e for e in self._view(LedgerEntry) if e.account_id == account_id]
        # dicts keep insertion order; created_at ties keep it
        entries.sort(key=lambda e: e.created_at)
        return [self._checkout(e) for e in entries]

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        return any(
            e.provider == provider and e.external_event_id == event_id
            for e in self._view(ProcessedEvent)
        )

    async def find_parked_event(self, provider: str, event_id: str) -> ParkedEvent | None:
        return self._first(
            ParkedEvent,
            lambda p: p.provider == provider and p.external_event_id == event_id,
        )

    async def list_parked_events(
        self,
        limit: int,
        due_before: datetime | None = None,
        provider: str | None = None,
        customer_id: str | None = None,
    ) -> list[ParkedEvent]:
        parked = [
            p
            for p in self._view(ParkedEvent)
            if (due_before is None or p.next_attempt_at <= due_before)
            and (provider is None or p.provider == provider)
            and (customer_id is None or p.customer_id == customer_id)
        ]
        parked.sort(key=lambda p: p.occurred_at)
        return [self._checkout(p) for p in parked[:limit]]

    def add(self, record: Base) -> None:
        if getattr(record, "id", None) is None:
            record.id = uuid4()  # type: ignore[attr-defined]
        key = (type(record), record.id)  # type: ignore[attr-defined]
        self._working[key] = record
        self._added.add(key)
        self._deleted.discard(key)

    async def delete(self, record: Base) -> None:
        key = (type(record), record.id)  # type: ignore[attr-defined]
        self._working.pop(key, None)
        if key in self._added:
            self._added.discard(key)
        else:
            self._deleted.add(key)

    async def commit(self) -> None:
        self._check_constraints()
        tables = self._store._tables
        for kind, pk in self._deleted:
            tables[kind].pop(pk, None)
        for (kind, pk), record in self._working.items():
            tables[kind][pk] = _clone(record)
        self._working.clear()
        self._added.clear()
        self._deleted.clear()

    async def rollback(self) -> None:
        self._working.clear()
        self._added.clear()
        self._deleted.clear()

    def _check_constraints(self) -> None:
        tables = self._store._tables
        for kind, pk in self._added:
            if pk in tables[kind]:
                raise StorageConflictError(f"duplicate {kind.__tablename__} key {pk}")

        for kind, unique_key in _UNIQUE_KEYS.items():
            seen: set[tuple[Any, ...]] = set()
            for record in self._view(kind):
                value = unique_key(record)
                if value is None:
                    continue
                if value in seen:
                    raise StorageConflictError(
                        f"unique constraint on {kind.__tablename__} violated by {value}"
                    )
                seen.add(value)

        for record in self._view(Account):
            if record.credits < 0:
                raise StorageConflictError(f"ck_credits_non_negative violated by {record.id}")


class MemoryBillingStore:
    """BillingStore kept in process memory."""

    def __init__(self) -> None:
        self._tables: dict[type[Base], dict[Any, Base]] = defaultdict(dict)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._locks.setdefault(account_id, asyncio.Lock())

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemoryUnitOfWork]:
        uow = MemoryUnitOfWork(self)
        try:
            yield uow
        finally:
            await uow.rollback()
            uow.release_locks()
