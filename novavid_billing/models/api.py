"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class AccountStatus(str, Enum):
    """Account status enumeration."""

    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class PlanTier(str, Enum):
    """Entitlement tier."""

    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class LedgerReason(str, Enum):
    """Why a ledger entry moved credits."""

    DEBIT = "debit"
    REFUND = "refund"
    GRANT = "grant"
    TRIAL_GRANT = "trial_grant"


class ReservationState(str, Enum):
    """Lifecycle of a credit hold."""

    HELD = "held"
    SETTLED = "settled"
    RELEASED = "released"


class BillingProvider(str, Enum):
    """External billing systems that send webhooks."""

    STRIPE = "stripe"
    PAYPAL = "paypal"


class SubscriptionStatus(str, Enum):
    """Normalized subscription state across providers."""

    NONE = "none"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


class IngestOutcome(str, Enum):
    """Result of feeding one webhook event to the reconciler."""

    APPLIED = "applied"
    DUPLICATE_IGNORED = "duplicate_ignored"
    STALE_IGNORED = "stale_ignored"
    IGNORED = "ignored"
    PARKED = "parked"


class MeteredOutcome(str, Enum):
    """Result of a metered operation."""

    COMPLETED = "completed"
    INSUFFICIENT_CREDITS = "insufficient_credits"


# ============================================================================
# Account Models
# ============================================================================


class CreateAccountRequest(BaseModel):
    """POST /v1/accounts request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    customer_email: str | None = Field(
        None,
        min_length=1,
        max_length=255,
        description="User email address for receipts and notifications",
    )

    @field_validator("account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        """Account ids are opaque but never blank."""
        if not v.strip():
            raise ValueError("account_id cannot be blank")
        return v


class SubscriptionRefResponse(BaseModel):
    """Provider subscription linked to an account."""

    provider: BillingProvider
    customer_id: str
    subscription_id: str | None = None
    status: SubscriptionStatus
    plan_key: str | None = None
    period_end: datetime | None = None
    event_at: datetime | None = None


class AccountResponse(BaseModel):
    """Account snapshot."""

    account_id: str
    plan_tier: PlanTier
    effective_tier: PlanTier
    credits: int
    trial_ends_at: datetime | None = None
    status: AccountStatus
    customer_email: str | None = None
    subscription: SubscriptionRefResponse | None = None
    created_at: datetime
    updated_at: datetime


class CapabilitiesResponse(BaseModel):
    """Feature limits for a tier."""

    display_name: str
    max_video_duration_seconds: int
    can_upload_music: bool
    music_library: str
    allow_cloud_save: bool
    max_projects: int
    ai_credit_ceiling: int | None = None


class EntitlementResponse(BaseModel):
    """GET /v1/accounts/{account_id}/entitlement response."""

    account_id: str
    tier: PlanTier
    plan_tier: PlanTier
    is_trial: bool
    trial_ends_at: datetime | None = None
    capabilities: CapabilitiesResponse


class LinkSubscriptionRequest(BaseModel):
    """POST /v1/accounts/{account_id}/subscription-link request body."""

    provider: BillingProvider
    customer_id: str = Field(..., min_length=1, max_length=255)
    subscription_id: str | None = Field(None, max_length=255)


class LinkSubscriptionResponse(BaseModel):
    """Result of linking a provider customer to an account."""

    account_id: str
    provider: BillingProvider
    customer_id: str
    reprocessed_events: int


# ============================================================================
# Admin Models
# ============================================================================


class GrantRequest(BaseModel):
    """POST /v1/admin/accounts/{account_id}/grants request body."""

    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    idempotency_key: str | None = Field(None, max_length=255)


class SetPlanRequest(BaseModel):
    """POST /v1/admin/accounts/{account_id}/plan request body."""

    plan_tier: PlanTier
    reason: str = Field(..., min_length=1, max_length=500)


class LedgerEntryResponse(BaseModel):
    """Single ledger entry."""

    entry_id: str
    delta: int
    reason: LedgerReason
    operation_id: str | None = None
    balance_after: int
    description: str
    created_at: datetime


class LedgerResponse(BaseModel):
    """Ledger listing with reconciliation check."""

    account_id: str
    credits: int
    ledger_total: int
    balanced: bool
    entries: list[LedgerEntryResponse]


class SweepResponse(BaseModel):
    """Result of an expiry sweep."""

    released: int


class ParkedRetryResponse(BaseModel):
    """Result of reprocessing parked events."""

    attempted: int
    applied: int
    still_parked: int


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the provider."""

    status: str
    event_id: str | None = None
    outcome: IngestOutcome | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: datetime
