"""
Plan Resolver - effective entitlement from plan tier and trial window.

Pure functions over account data: no I/O, no locks. The same table backs
server-side enforcement and the read-only entitlement the UI displays.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from novavid_billing.models.api import PlanTier
from novavid_billing.models.domain import AccountData

TIER_RANK: dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.PREMIUM: 1,
    PlanTier.PRO: 2,
}


class Capability(str, Enum):
    """Boolean features gated by tier."""

    UPLOAD_MUSIC = "upload_music"
    CLOUD_SAVE = "cloud_save"


@dataclass(frozen=True)
class PlanCapabilities:
    """Fixed feature limits for one tier."""

    display_name: str
    max_video_duration_seconds: int
    can_upload_music: bool
    music_library: str
    allow_cloud_save: bool
    max_projects: int
    ai_credit_ceiling: int | None  # None = no ceiling


PLAN_CAPABILITIES: dict[PlanTier, PlanCapabilities] = {
    PlanTier.FREE: PlanCapabilities(
        display_name="Free Starter",
        max_video_duration_seconds=8,
        can_upload_music=False,
        music_library="basic",
        allow_cloud_save=False,
        max_projects=3,
        ai_credit_ceiling=100,
    ),
    PlanTier.PREMIUM: PlanCapabilities(
        display_name="Premium Creator",
        max_video_duration_seconds=13,
        can_upload_music=True,
        music_library="varied",
        allow_cloud_save=True,
        max_projects=20,
        ai_credit_ceiling=1000,
    ),
    PlanTier.PRO: PlanCapabilities(
        display_name="Pro Studio",
        max_video_duration_seconds=18,
        can_upload_music=True,
        music_library="unlimited",
        allow_cloud_save=True,
        max_projects=9999,
        ai_credit_ceiling=None,
    ),
}


@dataclass(frozen=True)
class Entitlement:
    """What an account may do right now."""

    account_id: str
    tier: PlanTier
    plan_tier: PlanTier
    is_trial: bool
    trial_ends_at: datetime | None
    capabilities: PlanCapabilities

    def allows(self, capability: Capability) -> bool:
        """Check a boolean feature against the effective tier."""
        if capability == Capability.UPLOAD_MUSIC:
            return self.capabilities.can_upload_music
        if capability == Capability.CLOUD_SAVE:
            return self.capabilities.allow_cloud_save
        raise ValueError(f"Unknown capability: {capability}")

    def allows_video_duration(self, seconds: float) -> bool:
        return seconds <= self.capabilities.max_video_duration_seconds


def is_trial_active(account: AccountData, now: datetime) -> bool:
    """Trial is active strictly before trial_ends_at."""
    return account.trial_ends_at is not None and now < account.trial_ends_at


def effective_tier(account: AccountData, now: datetime) -> PlanTier:
    """Pro while the trial runs, otherwise the authoritative plan tier."""
    if is_trial_active(account, now):
        return PlanTier.PRO
    return account.plan_tier


def resolve_entitlement(account: AccountData, now: datetime) -> Entitlement:
    """Build the entitlement for an account at `now`."""
    tier = effective_tier(account, now)
    return Entitlement(
        account_id=account.account_id,
        tier=tier,
        plan_tier=account.plan_tier,
        is_trial=is_trial_active(account, now),
        trial_ends_at=account.trial_ends_at,
        capabilities=PLAN_CAPABILITIES[tier],
    )


def tier_for_plan_key(plan_key: str) -> PlanTier | None:
    """
    Map a billing plan key to its tier.

    Plan keys are `<tier>_<period>`, e.g. "pro_monthly" or "premium_yearly".
    Returns None for keys that name no paid tier.
    """
    tier_name, _, period = plan_key.strip().lower().partition("_")
    if period not in ("monthly", "yearly"):
        return None
    if tier_name == PlanTier.PREMIUM.value:
        return PlanTier.PREMIUM
    if tier_name == PlanTier.PRO.value:
        return PlanTier.PRO
    return None


def is_upgrade(from_tier: PlanTier, to_tier: PlanTier) -> bool:
    return TIER_RANK[to_tier] > TIER_RANK[from_tier]
