"""
Payment Provider Protocol - Provider-agnostic webhook interface.

NO DICTIONARIES past this boundary - raw provider payloads are turned into
SubscriptionEvent here and nothing downstream sees provider JSON.
"""

from collections.abc import Mapping
from typing import Any, Protocol

from novavid_billing.models.api import BillingProvider
from novavid_billing.models.domain import SubscriptionEvent

RawEvent = Mapping[str, Any]


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Stripe and PayPal both implement this interface; the reconciler works
    against it without knowing which provider sent an event.
    """

    provider: BillingProvider

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> RawEvent:
        """
        Verify a webhook delivery and return the parsed event body.

        Args:
            payload: Raw request body, exactly as received
            headers: Request headers carrying the provider signature

        Raises:
            WebhookVerificationError: If signature verification fails
            PaymentProviderError: If the provider could not be reached
        """
        ...

    def event_id(self, raw_event: RawEvent) -> str:
        """
        Provider's unique id for the event.

        Raises:
            MalformedEventError: If the event carries no id
        """
        ...

    def normalize(self, raw_event: RawEvent) -> SubscriptionEvent | None:
        """
        Convert a verified event to a SubscriptionEvent.

        Returns:
            None for event types that do not affect subscriptions

        Raises:
            MalformedEventError: If a relevant event is missing required fields
        """
        ...
