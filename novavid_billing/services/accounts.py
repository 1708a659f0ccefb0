"""
Account Service - account lifecycle and admin plan changes.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from datetime import timedelta

from structlog import get_logger

from novavid_billing.config import Settings, settings
from novavid_billing.db.models import Account, utc_now
from novavid_billing.exceptions import (
    AccountClosedError,
    AccountNotFoundError,
    ActiveSubscriptionError,
    InvariantViolationError,
    StorageConflictError,
)
from novavid_billing.models.api import (
    AccountStatus,
    BillingProvider,
    LedgerReason,
    PlanTier,
    SubscriptionStatus,
)
from novavid_billing.models.domain import AccountData, SubscriptionRef
from novavid_billing.observability.metrics import metrics
from novavid_billing.services.ledger import Clock, LedgerEngine
from novavid_billing.services.plan_resolver import Entitlement, resolve_entitlement
from novavid_billing.services.store import BillingStore

logger = get_logger(__name__)

SIGNUP_GRANT_KEY = "signup"

# Subscription states that block closing an account
LIVE_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value}
)


def account_to_domain(account: Account) -> AccountData:
    """Convert ORM account to domain model."""
    subscription = None
    if account.sub_provider is not None and account.sub_customer_id is not None:
        subscription = SubscriptionRef(
            provider=BillingProvider(account.sub_provider),
            customer_id=account.sub_customer_id,
            subscription_id=account.sub_subscription_id,
            status=SubscriptionStatus(account.sub_status or SubscriptionStatus.NONE.value),
            plan_key=account.sub_plan_key,
            period_end=account.sub_period_end,
            event_at=account.sub_event_at,
        )

    return AccountData(
        account_id=account.id,
        plan_tier=PlanTier(account.plan_tier),
        credits=account.credits,
        trial_ends_at=account.trial_ends_at,
        status=AccountStatus(account.status),
        customer_email=account.customer_email,
        subscription=subscription,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


class AccountService:
    """Account creation, lookup, closing and admin overrides."""

    def __init__(
        self,
        store: BillingStore,
        ledger: LedgerEngine,
        config: Settings = settings,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.config = config
        self.clock = clock

    async def register(self, account_id: str, customer_email: str | None = None) -> AccountData:
        """
        Create an account with signup credits and a trial window.

        Idempotent: an existing account is returned unchanged, so signup
        credits and the trial are granted at most once per account id.
        """
        if not account_id:
            raise ValueError("account_id cannot be empty")

        async with self.store.unit_of_work() as uow:
            existing = await uow.get_account(account_id)
            if existing is not None:
                return account_to_domain(existing)

            now = self.clock()
            account = Account(
                id=account_id,
                customer_email=customer_email,
                plan_tier=PlanTier.FREE.value,
                trial_ends_at=now + timedelta(days=self.config.trial_days),
                credits=0,
                status=AccountStatus.ACTIVE.value,
                sub_provider=None,
                sub_customer_id=None,
                sub_subscription_id=None,
                sub_status=None,
                sub_plan_key=None,
                sub_period_end=None,
                sub_event_at=None,
                created_at=now,
                updated_at=now,
            )
            uow.add(account)

            if self.config.signup_credits > 0:
                self.ledger.apply_delta(
                    uow,
                    account,
                    self.config.signup_credits,
                    LedgerReason.TRIAL_GRANT,
                    SIGNUP_GRANT_KEY,
                    "Signup credits",
                    now,
                )

            try:
                await uow.commit()
            except StorageConflictError:
                # Race condition - another request created the account
                logger.info("account_register_race", account_id=account_id)
                created = None
            else:
                created = account_to_domain(account)

        if created is None:
            return await self.get_account(account_id)

        logger.info(
            "account_registered",
            account_id=account_id,
            credits=created.credits,
            trial_ends_at=created.trial_ends_at.isoformat() if created.trial_ends_at else None,
        )
        return created

    async def get_account(self, account_id: str) -> AccountData:
        """
        Get account data.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        async with self.store.unit_of_work() as uow:
            account = await uow.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account_to_domain(account)

    async def get_entitlement(self, account_id: str) -> Entitlement:
        account = await self.get_account(account_id)
        return resolve_entitlement(account, self.clock())

    async def close_account(self, account_id: str) -> AccountData:
        """
        Close an account. Closed accounts accept no new reservations or grants.

        Raises:
            AccountNotFoundError: Account doesn't exist
            ActiveSubscriptionError: A live subscription must be canceled first
        """
        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            if account.status == AccountStatus.CLOSED.value:
                return account_to_domain(account)

            if account.sub_status in LIVE_SUBSCRIPTION_STATUSES:
                raise ActiveSubscriptionError(account_id, account.sub_status)

            account.status = AccountStatus.CLOSED.value
            account.updated_at = self.clock()
            await uow.commit()
            closed = account_to_domain(account)

        logger.info("account_closed", account_id=account_id, credits=closed.credits)
        return closed

    async def set_plan_tier(self, account_id: str, tier: PlanTier, reason: str) -> AccountData:
        """Admin override of the authoritative plan tier. Grants nothing."""
        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if account.status == AccountStatus.CLOSED.value:
                raise AccountClosedError(account_id)

            previous = account.plan_tier
            account.plan_tier = tier.value
            account.updated_at = self.clock()
            await uow.commit()
            updated = account_to_domain(account)

        metrics.record_plan_transition(previous, tier.value)
        logger.warning(
            "plan_tier_overridden",
            account_id=account_id,
            from_tier=previous,
            to_tier=tier.value,
            reason=reason,
        )
        return updated

    async def unfreeze(self, account_id: str) -> AccountData:
        """
        Return a frozen account to active once its ledger balances again.

        Raises:
            InvariantViolationError: Balance still disagrees with the ledger
        """
        report = await self.ledger.verify_ledger(account_id, freeze_on_mismatch=False)
        if not report.balanced:
            raise InvariantViolationError(
                account_id,
                f"balance {report.credits} != ledger total {report.ledger_total}",
            )

        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if account.status != AccountStatus.FROZEN.value:
                return account_to_domain(account)

            account.status = AccountStatus.ACTIVE.value
            account.updated_at = self.clock()
            await uow.commit()
            unfrozen = account_to_domain(account)

        logger.warning("account_unfrozen", account_id=account_id)
        return unfrozen
