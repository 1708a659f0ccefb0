"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from novavid_billing.models.api import (
    AccountStatus,
    BillingProvider,
    IngestOutcome,
    LedgerReason,
    MeteredOutcome,
    PlanTier,
    ReservationState,
    SubscriptionStatus,
)

T = TypeVar("T")


@dataclass(frozen=True)
class SubscriptionRef:
    """Provider subscription currently linked to an account."""

    provider: BillingProvider
    customer_id: str
    subscription_id: str | None
    status: SubscriptionStatus
    plan_key: str | None
    period_end: datetime | None
    event_at: datetime | None


@dataclass(frozen=True)
class AccountData:
    """Immutable account data snapshot."""

    account_id: str
    plan_tier: PlanTier
    credits: int
    trial_ends_at: datetime | None
    status: AccountStatus
    customer_email: str | None
    subscription: SubscriptionRef | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Reservation:
    """
    Credits debited for one metered operation.

    Threaded through the success path (settle) and the failure path (release).
    `replayed` is True when the operation id had already been reserved.
    """

    reservation_id: UUID
    account_id: str
    operation_id: str
    amount: int
    state: ReservationState
    created_at: datetime
    expires_at: datetime
    balance_after: int
    replayed: bool = False

    def __post_init__(self) -> None:
        """Validate reservation constraints."""
        if self.amount <= 0:
            raise ValueError(f"Reservation amount must be positive: {self.amount}")
        if not self.operation_id:
            raise ValueError("operation_id cannot be empty")


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    account_id: str
    delta: int
    reason: LedgerReason
    operation_id: str | None
    balance_after: int
    description: str
    created_at: datetime


@dataclass(frozen=True)
class LedgerReport:
    """Ledger total compared against the live balance."""

    account_id: str
    credits: int
    ledger_total: int
    entries: tuple[LedgerEntryData, ...]

    @property
    def balanced(self) -> bool:
        return self.credits == self.ledger_total


@dataclass(frozen=True)
class SubscriptionEvent:
    """
    Provider-agnostic subscription lifecycle event.

    Produced by a provider adapter; the reconciler only ever sees this shape.
    `status` is None for events that only carry the customer mapping.
    """

    provider: BillingProvider
    event_id: str
    event_type: str
    occurred_at: datetime
    customer_id: str | None
    subscription_id: str | None
    account_hint: str | None
    status: SubscriptionStatus | None
    plan_key: str | None
    period_end: datetime | None

    def __post_init__(self) -> None:
        """Validate event identity."""
        if not self.event_id:
            raise ValueError("event_id cannot be empty")
        if self.occurred_at.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware")


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one webhook ingestion."""

    outcome: IngestOutcome
    provider: BillingProvider
    event_id: str
    account_id: str | None = None
    plan_tier: PlanTier | None = None


@dataclass(frozen=True)
class MeteredResult(Generic[T]):
    """Outcome of a metered operation run through the gateway."""

    outcome: MeteredOutcome
    operation_id: str
    value: T | None = None
    reservation: Reservation | None = None
    balance: int | None = None
    required: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == MeteredOutcome.COMPLETED


@dataclass(frozen=True)
class ParkedRetrySummary:
    """Counts from one pass over parked events."""

    attempted: int = 0
    applied: int = 0
    still_parked: int = 0
