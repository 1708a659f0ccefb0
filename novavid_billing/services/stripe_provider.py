"""
Stripe Payment Provider Implementation.

Verifies Stripe webhook signatures and normalizes subscription events.
"""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from novavid_billing.exceptions import MalformedEventError, WebhookVerificationError
from novavid_billing.models.api import BillingProvider, SubscriptionStatus
from novavid_billing.models.domain import SubscriptionEvent
from novavid_billing.services.payment_provider import RawEvent
from novavid_billing.services.plan_resolver import tier_for_plan_key

logger = get_logger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
CHECKOUT_COMPLETED = "checkout.session.completed"

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.PENDING_APPROVAL,
    "trialing": SubscriptionStatus.ACTIVE,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# Metadata keys the checkout flow uses to carry our account id
ACCOUNT_HINT_KEYS = ("account_id", "userId")


def _timestamp(value: Any) -> datetime | None:
    """Unix seconds to an aware datetime; None passes through."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), UTC)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedEventError("stripe", f"invalid timestamp {value!r}") from e


def _object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def _account_hint(obj: Mapping[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    for key in ACCOUNT_HINT_KEYS:
        if metadata.get(key):
            return str(metadata[key])
    return None


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    provider = BillingProvider.STRIPE

    def __init__(
        self, api_key: str, webhook_secret: str, price_plans: Mapping[str, str] | None = None
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            price_plans: Stripe price id -> plan key
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_plans = dict(price_plans or {})
        stripe.api_key = api_key

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> RawEvent:
        """
        Verify the Stripe-Signature header and parse the event.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        signature = {k.lower(): v for k, v in headers.items()}.get("stripe-signature", "")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)
        # Plain JSON so normalization does not depend on StripeObject behaviour
        parsed: dict[str, Any] = json.loads(payload)
        return parsed

    def event_id(self, raw_event: RawEvent) -> str:
        event_id = raw_event.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedEventError(self.provider.value, "event has no id")
        return event_id

    def normalize(self, raw_event: RawEvent) -> SubscriptionEvent | None:
        """
        Convert a Stripe event to a SubscriptionEvent.

        Subscription lifecycle events carry status and plan. A completed
        subscription checkout only links the Stripe customer to the account
        named in client_reference_id, so its status is None.
        """
        event_type = raw_event.get("type", "")
        if event_type not in SUBSCRIPTION_EVENT_TYPES and event_type != CHECKOUT_COMPLETED:
            return None

        event_id = self.event_id(raw_event)
        occurred_at = _timestamp(raw_event.get("created"))
        if occurred_at is None:
            raise MalformedEventError(self.provider.value, f"{event_id} has no created time")

        obj = (raw_event.get("data") or {}).get("object")
        if not isinstance(obj, Mapping):
            raise MalformedEventError(self.provider.value, f"{event_id} has no data.object")

        if event_type == CHECKOUT_COMPLETED:
            return self._normalize_checkout(event_id, event_type, occurred_at, obj)

        customer_id = _object_id(obj.get("customer"))
        if customer_id is None:
            raise MalformedEventError(self.provider.value, f"{event_id} has no customer")

        if event_type == "customer.subscription.deleted":
            status = SubscriptionStatus.CANCELED
        else:
            raw_status = obj.get("status")
            if raw_status not in STRIPE_STATUS_MAP:
                raise MalformedEventError(
                    self.provider.value, f"{event_id} has unknown status {raw_status!r}"
                )
            status = STRIPE_STATUS_MAP[raw_status]

        item = self._first_item(obj)
        period_end = _timestamp(obj.get("current_period_end") or item.get("current_period_end"))

        return SubscriptionEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            customer_id=customer_id,
            subscription_id=_object_id(obj.get("id")),
            account_hint=_account_hint(obj),
            status=status,
            plan_key=self._plan_key(item.get("price") or {}),
            period_end=period_end,
        )

    def _normalize_checkout(
        self,
        event_id: str,
        event_type: str,
        occurred_at: datetime,
        session: Mapping[str, Any],
    ) -> SubscriptionEvent | None:
        if session.get("mode") != "subscription":
            return None

        customer_id = _object_id(session.get("customer"))
        account_hint = session.get("client_reference_id") or _account_hint(session)
        if customer_id is None or not account_hint:
            raise MalformedEventError(
                self.provider.value, f"{event_id} checkout has no customer or account reference"
            )

        return SubscriptionEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            customer_id=customer_id,
            subscription_id=_object_id(session.get("subscription")),
            account_hint=str(account_hint),
            status=None,
            plan_key=None,
            period_end=None,
        )

    @staticmethod
    def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
        items = (subscription.get("items") or {}).get("data") or []
        return items[0] if items else {}

    def _plan_key(self, price: Mapping[str, Any]) -> str | None:
        """Configured price mapping first, then the price's own lookup key or metadata."""
        price_id = price.get("id")
        if price_id in self.price_plans:
            return self.price_plans[price_id]

        for candidate in (price.get("lookup_key"), (price.get("metadata") or {}).get("plan_key")):
            if candidate and tier_for_plan_key(candidate) is not None:
                return str(candidate)
        return None
