"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    One row per end user: plan tier, credit balance, trial window and the
    provider subscription the webhooks reconcile against.
    """

    __tablename__ = "accounts"

    # Opaque id issued by the identity subsystem
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Entitlement
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    trial_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Balance
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Subscription reference (flattened, all null when no subscription)
    sub_provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    sub_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    sub_plan_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sub_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Timestamp of the newest provider event applied; older events are stale
    sub_event_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_credits_non_negative"),
        CheckConstraint("plan_tier IN ('free', 'premium', 'pro')", name="ck_plan_tier"),
        CheckConstraint("status IN ('active', 'frozen', 'closed')", name="ck_account_status"),
        UniqueConstraint("sub_provider", "sub_customer_id", name="uq_account_subscription_customer"),
        Index("idx_accounts_status", "status"),
        Index(
            "idx_accounts_sub_customer",
            "sub_provider",
            "sub_customer_id",
            postgresql_where=(sub_customer_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(id={self.id}, plan_tier={self.plan_tier}, "
            f"credits={self.credits}, status={self.status})>"
        )


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only record of every credit movement.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)

    # Idempotency key: client operation id, webhook event id, or admin key
    operation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Balance snapshot (denormalized for auditing)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("delta <> 0", name="ck_ledger_delta_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_non_negative"),
        CheckConstraint(
            "reason IN ('debit', 'refund', 'grant', 'trial_grant')", name="ck_ledger_reason"
        ),
        UniqueConstraint("account_id", "reason", "operation_id", name="uq_ledger_operation"),
        Index("idx_ledger_entries_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, account_id={self.account_id}, "
            f"delta={self.delta}, reason={self.reason})>"
        )


class CreditReservation(Base):
    """
    ORM model for credit_reservations table.

    A debit held for one metered operation until it is settled or released.
    """

    __tablename__ = "credit_reservations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False
    )
    operation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="held")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_reservation_amount_positive"),
        CheckConstraint(
            "state IN ('held', 'settled', 'released')", name="ck_reservation_state"
        ),
        UniqueConstraint("account_id", "operation_id", name="uq_reservation_operation"),
        Index(
            "idx_reservations_held_expiry",
            "expires_at",
            postgresql_where=(state == "held"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditReservation(account_id={self.account_id}, "
            f"operation_id={self.operation_id}, amount={self.amount}, state={self.state})>"
        )


class ProcessedEvent(Base):
    """
    ORM model for processed_events table.

    Idempotency record for at-least-once webhook delivery.
    """

    __tablename__ = "processed_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)

    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_processed_event"),
        Index("idx_processed_events_account", "account_id"),
    )


class ParkedEvent(Base):
    """
    ORM model for parked_events table.

    Normalized webhook events waiting for their customer -> account mapping.
    """

    __tablename__ = "parked_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_hint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    plan_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    parked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_parked_event"),
        Index("idx_parked_events_customer", "provider", "customer_id"),
        Index("idx_parked_events_next_attempt", "next_attempt_at"),
    )
