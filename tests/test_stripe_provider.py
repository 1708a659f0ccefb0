"""
Tests for StripeProvider.

Signature verification and event normalization.
"""

import json
import time

import pytest

from novavid_billing.exceptions import MalformedEventError, WebhookVerificationError
from novavid_billing.models.api import BillingProvider, SubscriptionStatus
from novavid_billing.services.stripe_provider import StripeProvider

from conftest import (
    START,
    stripe_checkout_event,
    stripe_signature_header,
    stripe_subscription_event,
)


class TestVerifyWebhook:
    """Tests for Stripe-Signature verification."""

    async def test_valid_signature_returns_plain_event(
        self, stripe_provider: StripeProvider
    ) -> None:
        payload = json.dumps(stripe_subscription_event("evt_1", START)).encode()

        event = await stripe_provider.verify_webhook(
            payload, {"Stripe-Signature": stripe_signature_header(payload)}
        )

        assert isinstance(event, dict)
        assert event["id"] == "evt_1"
        assert event["data"]["object"]["customer"] == "cus_123"

    async def test_header_lookup_is_case_insensitive(
        self, stripe_provider: StripeProvider
    ) -> None:
        payload = json.dumps(stripe_subscription_event("evt_1", START)).encode()

        event = await stripe_provider.verify_webhook(
            payload, {"stripe-signature": stripe_signature_header(payload)}
        )

        assert event["id"] == "evt_1"

    async def test_missing_header(self, stripe_provider: StripeProvider) -> None:
        with pytest.raises(WebhookVerificationError):
            await stripe_provider.verify_webhook(b"{}", {})

    async def test_wrong_secret(self, stripe_provider: StripeProvider) -> None:
        payload = json.dumps(stripe_subscription_event("evt_1", START)).encode()
        header = stripe_signature_header(payload, secret="whsec_other")

        with pytest.raises(WebhookVerificationError):
            await stripe_provider.verify_webhook(payload, {"Stripe-Signature": header})

    async def test_tampered_payload(self, stripe_provider: StripeProvider) -> None:
        payload = json.dumps(stripe_subscription_event("evt_1", START)).encode()
        header = stripe_signature_header(payload)
        tampered = payload.replace(b"cus_123", b"cus_999")

        with pytest.raises(WebhookVerificationError):
            await stripe_provider.verify_webhook(tampered, {"Stripe-Signature": header})

    async def test_expired_timestamp(self, stripe_provider: StripeProvider) -> None:
        payload = json.dumps(stripe_subscription_event("evt_1", START)).encode()
        header = stripe_signature_header(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookVerificationError):
            await stripe_provider.verify_webhook(payload, {"Stripe-Signature": header})


class TestNormalize:
    """Tests for Stripe event normalization."""

    def test_subscription_updated(self, stripe_provider: StripeProvider) -> None:
        event = stripe_provider.normalize(stripe_subscription_event("evt_1", START))

        assert event is not None
        assert event.provider == BillingProvider.STRIPE
        assert event.event_id == "evt_1"
        assert event.occurred_at == START
        assert event.customer_id == "cus_123"
        assert event.subscription_id == "sub_123"
        assert event.status == SubscriptionStatus.ACTIVE
        assert event.plan_key == "pro_monthly"
        assert event.period_end is not None
        assert event.account_hint is None

    def test_deleted_is_canceled(self, stripe_provider: StripeProvider) -> None:
        event = stripe_provider.normalize(
            stripe_subscription_event(
                "evt_1", START, status="active", event_type="customer.subscription.deleted"
            )
        )

        assert event is not None
        assert event.status == SubscriptionStatus.CANCELED

    @pytest.mark.parametrize(
        ("stripe_status", "status"),
        [
            ("trialing", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.UNPAID),
            ("incomplete", SubscriptionStatus.PENDING_APPROVAL),
            ("incomplete_expired", SubscriptionStatus.CANCELED),
        ],
    )
    def test_status_mapping(
        self, stripe_provider: StripeProvider, stripe_status: str, status: SubscriptionStatus
    ) -> None:
        event = stripe_provider.normalize(
            stripe_subscription_event("evt_1", START, status=stripe_status)
        )

        assert event is not None
        assert event.status == status

    def test_unknown_status_is_malformed(self, stripe_provider: StripeProvider) -> None:
        with pytest.raises(MalformedEventError):
            stripe_provider.normalize(
                stripe_subscription_event("evt_1", START, status="mystery")
            )

    def test_metadata_account_hint(self, stripe_provider: StripeProvider) -> None:
        event = stripe_provider.normalize(
            stripe_subscription_event("evt_1", START, metadata={"userId": "user-9"})
        )

        assert event is not None
        assert event.account_hint == "user-9"

    def test_plan_key_from_lookup_key(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_subscription_event("evt_1", START, price_id="price_other")
        raw["data"]["object"]["items"]["data"][0]["price"]["lookup_key"] = "premium_yearly"

        event = stripe_provider.normalize(raw)

        assert event is not None
        assert event.plan_key == "premium_yearly"

    def test_unmapped_price_has_no_plan_key(self, stripe_provider: StripeProvider) -> None:
        event = stripe_provider.normalize(
            stripe_subscription_event("evt_1", START, price_id="price_other")
        )

        assert event is not None
        assert event.plan_key is None

    def test_expanded_customer_object(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_subscription_event("evt_1", START)
        raw["data"]["object"]["customer"] = {"id": "cus_expanded", "object": "customer"}

        event = stripe_provider.normalize(raw)

        assert event is not None
        assert event.customer_id == "cus_expanded"

    def test_missing_customer_is_malformed(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_subscription_event("evt_1", START)
        raw["data"]["object"]["customer"] = None

        with pytest.raises(MalformedEventError):
            stripe_provider.normalize(raw)

    def test_missing_created_is_malformed(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_subscription_event("evt_1", START)
        del raw["created"]

        with pytest.raises(MalformedEventError):
            stripe_provider.normalize(raw)

    @pytest.mark.parametrize("created", ["yesterday", 10**20, [1]])
    def test_unparseable_created_is_malformed(
        self, stripe_provider: StripeProvider, created: object
    ) -> None:
        raw = stripe_subscription_event("evt_1", START)
        raw["created"] = created

        with pytest.raises(MalformedEventError, match="invalid timestamp"):
            stripe_provider.normalize(raw)

    def test_unparseable_period_end_is_malformed(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_subscription_event("evt_1", START)
        raw["data"]["object"]["items"]["data"][0]["current_period_end"] = "next month"

        with pytest.raises(MalformedEventError, match="invalid timestamp"):
            stripe_provider.normalize(raw)

    def test_unhandled_type_returns_none(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_subscription_event("evt_1", START, event_type="invoice.paid")
        assert stripe_provider.normalize(raw) is None

    def test_event_without_id(self, stripe_provider: StripeProvider) -> None:
        with pytest.raises(MalformedEventError):
            stripe_provider.event_id({"type": "customer.subscription.updated"})


class TestCheckout:
    """Tests for checkout.session.completed."""

    def test_subscription_checkout_links_customer(
        self, stripe_provider: StripeProvider
    ) -> None:
        event = stripe_provider.normalize(stripe_checkout_event("evt_cs", START, "user-1"))

        assert event is not None
        assert event.status is None
        assert event.customer_id == "cus_123"
        assert event.account_hint == "user-1"
        assert event.subscription_id == "sub_123"

    def test_payment_mode_checkout_ignored(self, stripe_provider: StripeProvider) -> None:
        raw = stripe_checkout_event("evt_cs", START, "user-1")
        raw["data"]["object"]["mode"] = "payment"

        assert stripe_provider.normalize(raw) is None

    def test_checkout_without_reference_is_malformed(
        self, stripe_provider: StripeProvider
    ) -> None:
        raw = stripe_checkout_event("evt_cs", START, "user-1")
        raw["data"]["object"]["client_reference_id"] = None

        with pytest.raises(MalformedEventError):
            stripe_provider.normalize(raw)
