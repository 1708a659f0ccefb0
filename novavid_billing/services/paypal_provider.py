"""
PayPal Payment Provider Implementation.

Verifies PayPal webhooks through the verify-webhook-signature API and
normalizes BILLING.SUBSCRIPTION.* events.
"""

import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx
from structlog import get_logger

from novavid_billing.exceptions import (
    MalformedEventError,
    PaymentProviderError,
    WebhookVerificationError,
)
from novavid_billing.models.api import BillingProvider, SubscriptionStatus
from novavid_billing.models.domain import SubscriptionEvent
from novavid_billing.services.payment_provider import RawEvent
from novavid_billing.services.plan_resolver import tier_for_plan_key

logger = get_logger(__name__)

# Event types with a fixed meaning; UPDATED reads resource.status instead
PAYPAL_EVENT_STATUS: dict[str, SubscriptionStatus] = {
    "BILLING.SUBSCRIPTION.CREATED": SubscriptionStatus.PENDING_APPROVAL,
    "BILLING.SUBSCRIPTION.ACTIVATED": SubscriptionStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": SubscriptionStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.SUSPENDED": SubscriptionStatus.PAST_DUE,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": SubscriptionStatus.PAST_DUE,
    "BILLING.SUBSCRIPTION.CANCELLED": SubscriptionStatus.CANCELED,
    "BILLING.SUBSCRIPTION.EXPIRED": SubscriptionStatus.CANCELED,
}
SUBSCRIPTION_UPDATED = "BILLING.SUBSCRIPTION.UPDATED"

PAYPAL_RESOURCE_STATUS: dict[str, SubscriptionStatus] = {
    "APPROVAL_PENDING": SubscriptionStatus.PENDING_APPROVAL,
    "APPROVED": SubscriptionStatus.PENDING_APPROVAL,
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "SUSPENDED": SubscriptionStatus.PAST_DUE,
    "CANCELLED": SubscriptionStatus.CANCELED,
    "EXPIRED": SubscriptionStatus.CANCELED,
}

# Header -> verify-webhook-signature body field
VERIFY_HEADERS = {
    "paypal-auth-algo": "auth_algo",
    "paypal-cert-url": "cert_url",
    "paypal-transmission-id": "transmission_id",
    "paypal-transmission-sig": "transmission_sig",
    "paypal-transmission-time": "transmission_time",
}


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else None


class PayPalProvider:
    """
    PayPal payment provider implementation.

    Implements the PaymentProvider protocol for PayPal subscriptions.
    """

    provider = BillingProvider.PAYPAL

    TOKEN_PATH = "/v1/oauth2/token"
    VERIFY_PATH = "/v1/notifications/verify-webhook-signature"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        api_base: str,
        plan_ids: Mapping[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_base = api_base.rstrip("/")
        self.plan_ids = dict(plan_ids or {})
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def _access_token(self) -> str:
        try:
            response = await self.http_client.post(
                f"{self.api_base}{self.TOKEN_PATH}",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
            return str(response.json()["access_token"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.error("paypal_token_request_failed", error=str(exc))
            raise PaymentProviderError(f"PayPal token request failed: {exc}") from exc

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> RawEvent:
        """
        Verify a PayPal webhook with PayPal's verification API.

        Raises:
            WebhookVerificationError: Missing headers, bad body or failed verification
            PaymentProviderError: PayPal API unreachable
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in VERIFY_HEADERS if not lowered.get(h)]
        if missing:
            raise WebhookVerificationError(f"Missing PayPal headers: {', '.join(missing)}")

        try:
            event: dict[str, Any] = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError(f"Failed to parse PayPal webhook: {exc}") from exc

        body: dict[str, Any] = {field: lowered[h] for h, field in VERIFY_HEADERS.items()}
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event

        token = await self._access_token()
        try:
            response = await self.http_client.post(
                f"{self.api_base}{self.VERIFY_PATH}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            verification_status = response.json().get("verification_status")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("paypal_webhook_verification_request_failed", error=str(exc))
            raise PaymentProviderError(f"PayPal verification request failed: {exc}") from exc

        if verification_status != "SUCCESS":
            logger.error(
                "paypal_webhook_verification_failed",
                event_id=event.get("id"),
                verification_status=verification_status,
            )
            raise WebhookVerificationError("Invalid PayPal webhook signature")

        logger.info(
            "paypal_webhook_verified", event_id=event.get("id"), event_type=event.get("event_type")
        )
        return event

    def event_id(self, raw_event: RawEvent) -> str:
        event_id = raw_event.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedEventError(self.provider.value, "event has no id")
        return event_id

    def normalize(self, raw_event: RawEvent) -> SubscriptionEvent | None:
        """Convert a BILLING.SUBSCRIPTION.* event to a SubscriptionEvent."""
        event_type = raw_event.get("event_type", "")
        if event_type not in PAYPAL_EVENT_STATUS and event_type != SUBSCRIPTION_UPDATED:
            return None

        event_id = self.event_id(raw_event)
        occurred_at = _parse_time(raw_event.get("create_time"))
        if occurred_at is None:
            raise MalformedEventError(self.provider.value, f"{event_id} has no create_time")

        resource = raw_event.get("resource")
        if not isinstance(resource, Mapping):
            raise MalformedEventError(self.provider.value, f"{event_id} has no resource")

        if event_type == SUBSCRIPTION_UPDATED:
            raw_status = str(resource.get("status", "")).upper()
            if raw_status not in PAYPAL_RESOURCE_STATUS:
                raise MalformedEventError(
                    self.provider.value, f"{event_id} has unknown status {raw_status!r}"
                )
            status = PAYPAL_RESOURCE_STATUS[raw_status]
        else:
            status = PAYPAL_EVENT_STATUS[event_type]

        subscriber = resource.get("subscriber") or {}
        billing_info = resource.get("billing_info") or {}
        # PAYMENT.FAILED carries the subscription id in billing_agreement_id
        subscription_id = resource.get("billing_agreement_id") or resource.get("id")

        return SubscriptionEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            customer_id=subscriber.get("payer_id") or None,
            subscription_id=subscription_id or None,
            account_hint=resource.get("custom_id") or None,
            status=status,
            plan_key=self._plan_key(resource.get("plan_id")),
            period_end=_parse_time(billing_info.get("next_billing_time")),
        )

    def _plan_key(self, plan_id: Any) -> str | None:
        if not plan_id:
            return None
        if plan_id in self.plan_ids:
            return self.plan_ids[plan_id]
        # Some plans are created with the plan key as their id
        if tier_for_plan_key(str(plan_id)) is not None:
            return str(plan_id)
        return None
