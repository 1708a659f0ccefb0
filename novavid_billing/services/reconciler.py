"""
Webhook Reconciler - apply provider subscription events to accounts.

NO DICTIONARIES past the provider adapters - events arrive here as
SubscriptionEvent.

Guarantees:
- Each (provider, event id) changes state at most once.
- Per account, an event older than the newest applied one changes nothing.
- Events that cannot be matched to an account are parked and retried,
  never dropped.
"""

from collections.abc import Mapping
from datetime import timedelta
from uuid import uuid4

from structlog import get_logger

from novavid_billing.config import Settings, settings
from novavid_billing.db.models import Account, ParkedEvent, ProcessedEvent, utc_now
from novavid_billing.exceptions import (
    AccountClosedError,
    AccountFrozenError,
    AccountNotFoundError,
    BillingError,
    IdempotencyConflictError,
    MalformedEventError,
    UnresolvedAccountMappingError,
)
from novavid_billing.models.api import (
    AccountStatus,
    BillingProvider,
    IngestOutcome,
    LedgerReason,
    PlanTier,
    SubscriptionStatus,
)
from novavid_billing.models.domain import IngestResult, ParkedRetrySummary, SubscriptionEvent
from novavid_billing.observability.metrics import metrics
from novavid_billing.observability.tracing import trace_operation
from novavid_billing.services.ledger import Clock, LedgerEngine
from novavid_billing.services.payment_provider import PaymentProvider, RawEvent
from novavid_billing.services.plan_resolver import is_upgrade, tier_for_plan_key
from novavid_billing.services.store import BillingStore, BillingUnitOfWork

logger = get_logger(__name__)


def _parked_to_event(parked: ParkedEvent) -> SubscriptionEvent:
    return SubscriptionEvent(
        provider=BillingProvider(parked.provider),
        event_id=parked.external_event_id,
        event_type=parked.event_type,
        occurred_at=parked.occurred_at,
        customer_id=parked.customer_id,
        subscription_id=parked.subscription_id,
        account_hint=parked.account_hint,
        status=SubscriptionStatus(parked.status) if parked.status else None,
        plan_key=parked.plan_key,
        period_end=parked.period_end,
    )


class WebhookReconciler:
    """Converge account plan state with provider subscription events."""

    def __init__(
        self,
        store: BillingStore,
        ledger: LedgerEngine,
        providers: Mapping[BillingProvider, PaymentProvider],
        config: Settings = settings,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.providers = dict(providers)
        self.config = config
        self.clock = clock

    # ========================================================================
    # Ingestion
    # ========================================================================

    async def ingest(self, provider: BillingProvider, raw_event: RawEvent) -> IngestResult:
        """
        Process one verified provider event.

        Raises:
            MalformedEventError: Event is missing required fields
            AccountFrozenError: Target account is frozen; redelivery retries later
            StorageConflictError: Concurrent write; redelivery retries later
        """
        adapter = self.providers[provider]
        event_id = adapter.event_id(raw_event)

        with trace_operation("reconciler.ingest", provider=provider.value, event_id=event_id):
            async with self.store.unit_of_work() as uow:
                duplicate = await uow.is_event_processed(provider.value, event_id)

            if duplicate:
                result = IngestResult(IngestOutcome.DUPLICATE_IGNORED, provider, event_id)
            else:
                event = adapter.normalize(raw_event)
                if event is None:
                    result = await self._record_ignored(provider, event_id, raw_event)
                else:
                    result = await self.apply(event)

        metrics.record_webhook_event(provider.value, result.outcome.value)
        logger.info(
            "webhook_event_ingested",
            provider=provider.value,
            event_id=event_id,
            outcome=result.outcome.value,
            account_id=result.account_id,
        )
        return result

    async def apply(self, event: SubscriptionEvent) -> IngestResult:
        """Apply a normalized event, or park it when no account matches."""
        if event.customer_id is None and event.account_hint is None:
            raise MalformedEventError(
                event.provider.value, f"{event.event_id} names neither customer nor account"
            )
        target = self._target_tier(event)

        try:
            account_id = await self._resolve_account(event)
        except UnresolvedAccountMappingError as exc:
            return await self._park(event, str(exc))

        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            if await uow.is_event_processed(event.provider.value, event.event_id):
                await self._discard_parked(uow, event)
                await uow.commit()
                return IngestResult(
                    IngestOutcome.DUPLICATE_IGNORED, event.provider, event.event_id, account_id
                )

            if account.status == AccountStatus.FROZEN.value:
                raise AccountFrozenError(account_id)

            if (
                event.status is not None
                and account.sub_event_at is not None
                and event.occurred_at < account.sub_event_at
            ):
                outcome = IngestOutcome.STALE_IGNORED
                logger.info(
                    "webhook_event_stale",
                    account_id=account_id,
                    event_id=event.event_id,
                    occurred_at=event.occurred_at.isoformat(),
                    watermark=account.sub_event_at.isoformat(),
                )
            else:
                outcome = IngestOutcome.APPLIED
                self._link(account, event)
                if event.status is not None:
                    self._apply_subscription(uow, account, event, event.status, target)

            uow.add(
                ProcessedEvent(
                    id=uuid4(),
                    provider=event.provider.value,
                    external_event_id=event.event_id,
                    event_type=event.event_type,
                    account_id=account_id,
                    outcome=outcome.value,
                    processed_at=self.clock(),
                )
            )
            await self._discard_parked(uow, event)
            await uow.commit()
            plan_tier = PlanTier(account.plan_tier)

        return IngestResult(outcome, event.provider, event.event_id, account_id, plan_tier)

    def _apply_subscription(
        self,
        uow: BillingUnitOfWork,
        account: Account,
        event: SubscriptionEvent,
        status: SubscriptionStatus,
        target: PlanTier,
    ) -> None:
        previous = PlanTier(account.plan_tier)
        now = self.clock()

        account.plan_tier = target.value
        account.sub_status = status.value
        account.sub_event_at = event.occurred_at
        if event.plan_key is not None:
            account.sub_plan_key = event.plan_key
        if event.period_end is not None:
            account.sub_period_end = event.period_end
        account.updated_at = now

        if previous == target:
            return

        metrics.record_plan_transition(previous.value, target.value)
        logger.info(
            "plan_tier_changed",
            account_id=account.id,
            from_tier=previous.value,
            to_tier=target.value,
            subscription_status=status.value,
            event_id=event.event_id,
        )

        bonus = self._upgrade_bonus(target)
        if is_upgrade(previous, target) and bonus > 0:
            if account.status != AccountStatus.ACTIVE.value:
                logger.info("upgrade_bonus_skipped", account_id=account.id, status=account.status)
                return
            self.ledger.apply_delta(
                uow,
                account,
                bonus,
                LedgerReason.GRANT,
                f"{event.provider.value}:{event.event_id}",
                f"Upgrade bonus {previous.value} -> {target.value}",
                now,
            )

    def _link(self, account: Account, event: SubscriptionEvent) -> None:
        """Record the provider customer on the account the event resolved to."""
        if event.customer_id is not None and (
            account.sub_provider != event.provider.value
            or account.sub_customer_id != event.customer_id
        ):
            logger.info(
                "subscription_customer_linked",
                account_id=account.id,
                provider=event.provider.value,
                customer_id=event.customer_id,
            )
            account.sub_provider = event.provider.value
            account.sub_customer_id = event.customer_id
            account.sub_subscription_id = None
        if event.subscription_id is not None and account.sub_provider == event.provider.value:
            account.sub_subscription_id = event.subscription_id

    def _target_tier(self, event: SubscriptionEvent) -> PlanTier:
        """Tier an event implies. Only an active subscription grants a paid tier."""
        if event.status != SubscriptionStatus.ACTIVE:
            return PlanTier.FREE
        tier = tier_for_plan_key(event.plan_key) if event.plan_key else None
        if tier is None:
            raise MalformedEventError(
                event.provider.value,
                f"{event.event_id} is active with unknown plan {event.plan_key!r}",
            )
        return tier

    def _upgrade_bonus(self, tier: PlanTier) -> int:
        if tier == PlanTier.PRO:
            return self.config.pro_upgrade_bonus_credits
        if tier == PlanTier.PREMIUM:
            return self.config.premium_upgrade_bonus_credits
        return 0

    async def _resolve_account(self, event: SubscriptionEvent) -> str:
        async with self.store.unit_of_work() as uow:
            if event.customer_id is not None:
                linked = await uow.find_account_by_customer(
                    event.provider.value, event.customer_id
                )
                if linked is not None:
                    return linked.id
            if event.account_hint is not None:
                hinted = await uow.get_account(event.account_hint)
                if hinted is not None:
                    return hinted.id
        raise UnresolvedAccountMappingError(event.provider.value, event.customer_id)

    async def _record_ignored(
        self, provider: BillingProvider, event_id: str, raw_event: RawEvent
    ) -> IngestResult:
        event_type = str(raw_event.get("type") or raw_event.get("event_type") or "unknown")
        async with self.store.unit_of_work() as uow:
            uow.add(
                ProcessedEvent(
                    id=uuid4(),
                    provider=provider.value,
                    external_event_id=event_id,
                    event_type=event_type[:100],
                    account_id=None,
                    outcome=IngestOutcome.IGNORED.value,
                    processed_at=self.clock(),
                )
            )
            await uow.commit()
        return IngestResult(IngestOutcome.IGNORED, provider, event_id)

    # ========================================================================
    # Parked events
    # ========================================================================

    def _next_attempt_delay(self, attempts: int) -> timedelta:
        seconds = self.config.parked_retry_base_seconds * (2 ** min(attempts, 16))
        return timedelta(seconds=min(seconds, self.config.parked_retry_max_seconds))

    async def _park(self, event: SubscriptionEvent, reason: str) -> IngestResult:
        now = self.clock()
        async with self.store.unit_of_work() as uow:
            parked = await uow.find_parked_event(event.provider.value, event.event_id)
            if parked is None:
                parked = ParkedEvent(
                    id=uuid4(),
                    provider=event.provider.value,
                    external_event_id=event.event_id,
                    event_type=event.event_type,
                    occurred_at=event.occurred_at,
                    customer_id=event.customer_id,
                    subscription_id=event.subscription_id,
                    account_hint=event.account_hint,
                    status=event.status.value if event.status else None,
                    plan_key=event.plan_key,
                    period_end=event.period_end,
                    attempts=0,
                    last_error=reason,
                    parked_at=now,
                    next_attempt_at=now + self._next_attempt_delay(0),
                )
                uow.add(parked)
            else:
                parked.attempts += 1
                parked.last_error = reason
                parked.next_attempt_at = now + self._next_attempt_delay(parked.attempts)
            await uow.commit()
            attempts = parked.attempts

        logger.warning(
            "webhook_event_parked",
            provider=event.provider.value,
            event_id=event.event_id,
            customer_id=event.customer_id,
            account_hint=event.account_hint,
            attempts=attempts,
        )
        return IngestResult(IngestOutcome.PARKED, event.provider, event.event_id)

    @staticmethod
    async def _discard_parked(uow: BillingUnitOfWork, event: SubscriptionEvent) -> None:
        parked = await uow.find_parked_event(event.provider.value, event.event_id)
        if parked is not None:
            await uow.delete(parked)

    async def reprocess_parked(
        self,
        limit: int | None = None,
        provider: BillingProvider | None = None,
        customer_id: str | None = None,
    ) -> ParkedRetrySummary:
        """
        Retry parked events in event-time order.

        Without a customer filter only events whose backoff has elapsed are
        retried; with one, all of that customer's events are.
        """
        batch = limit if limit is not None else self.config.sweep_batch_size
        async with self.store.unit_of_work() as uow:
            parked = await uow.list_parked_events(
                batch,
                due_before=self.clock() if customer_id is None else None,
                provider=provider.value if provider else None,
                customer_id=customer_id,
            )
            events = [_parked_to_event(p) for p in parked]

        applied = 0
        still_parked = 0
        for event in events:
            try:
                result = await self.apply(event)
            except BillingError as e:
                logger.warning(
                    "parked_event_retry_failed",
                    provider=event.provider.value,
                    event_id=event.event_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                metrics.record_error(type(e).__name__, "reprocess_parked")
                await self._park(event, str(e))
                still_parked += 1
                continue

            metrics.record_webhook_event(event.provider.value, result.outcome.value)
            if result.outcome == IngestOutcome.PARKED:
                still_parked += 1
            else:
                applied += 1

        summary = ParkedRetrySummary(
            attempted=len(events), applied=applied, still_parked=still_parked
        )
        if events:
            logger.info(
                "parked_events_reprocessed",
                attempted=summary.attempted,
                applied=summary.applied,
                still_parked=summary.still_parked,
            )
        return summary

    # ========================================================================
    # Customer linking
    # ========================================================================

    async def link_customer(
        self,
        account_id: str,
        provider: BillingProvider,
        customer_id: str,
        subscription_id: str | None = None,
    ) -> ParkedRetrySummary:
        """
        Link a provider customer to an account and replay its parked events.

        Raises:
            AccountNotFoundError: Account doesn't exist
            AccountClosedError: Account is closed
            IdempotencyConflictError: Customer is linked to a different account
        """
        async with self.store.unit_of_work() as uow:
            account = await uow.lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if account.status == AccountStatus.CLOSED.value:
                raise AccountClosedError(account_id)

            linked = await uow.find_account_by_customer(provider.value, customer_id)
            if linked is not None and linked.id != account_id:
                raise IdempotencyConflictError(
                    customer_id, f"{provider.value} customer is linked to another account"
                )

            if account.sub_provider != provider.value or account.sub_customer_id != customer_id:
                account.sub_provider = provider.value
                account.sub_customer_id = customer_id
                account.sub_subscription_id = subscription_id
            elif subscription_id is not None:
                account.sub_subscription_id = subscription_id
            account.updated_at = self.clock()
            await uow.commit()

        logger.info(
            "subscription_customer_linked",
            account_id=account_id,
            provider=provider.value,
            customer_id=customer_id,
        )
        return await self.reprocess_parked(provider=provider, customer_id=customer_id)
