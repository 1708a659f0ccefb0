"""
Tests for API routes.

Account, admin and webhook endpoints over the in-memory store.
"""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from novavid_billing.api.dependencies import (
    get_account_service,
    get_billing_store,
    get_paypal_provider,
    get_stripe_provider,
)
from novavid_billing.db.models import Account
from novavid_billing.exceptions import StorageConflictError
from novavid_billing.main import app
from novavid_billing.services.memory_store import MemoryBillingStore

from conftest import (
    PAYPAL_HEADERS,
    paypal_subscription_event,
    stripe_signature_header,
    stripe_subscription_event,
)


def create_account(client: TestClient, headers: dict[str, str], account_id: str = "user-1") -> Any:
    response = client.post(
        "/v1/accounts",
        json={"account_id": account_id, "customer_email": f"{account_id}@example.com"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


def post_stripe(client: TestClient, event: dict[str, Any]) -> Any:
    payload = json.dumps(event).encode()
    return client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={
            "Stripe-Signature": stripe_signature_header(payload),
            "Content-Type": "application/json",
        },
    )


def recent_stripe_event(event_id: str, **kwargs: Any) -> dict[str, Any]:
    return stripe_subscription_event(event_id, datetime.now(UTC), **kwargs)


# ============================================================================
# Authentication
# ============================================================================


class TestServiceKey:
    """Tests for X-API-Key enforcement."""

    def test_missing_key(self, client: TestClient) -> None:
        response = client.get("/v1/accounts/user-1")
        assert response.status_code == 401

    def test_wrong_key(self, client: TestClient) -> None:
        response = client.get("/v1/accounts/user-1", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_admin_requires_key(self, client: TestClient) -> None:
        response = client.post("/v1/admin/reservations/sweep")
        assert response.status_code == 401

    def test_key_not_configured(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        with patch("novavid_billing.api.dependencies.settings") as mock_settings:
            mock_settings.service_api_key = ""
            response = client.get("/v1/accounts/user-1", headers=auth_headers)

        assert response.status_code == 503

    def test_webhooks_do_not_need_key(self, client: TestClient) -> None:
        response = post_stripe(client, recent_stripe_event("evt_1", customer="cus_unknown"))
        assert response.status_code == 202


# ============================================================================
# Accounts
# ============================================================================


class TestAccountRoutes:
    """Tests for /v1/accounts."""

    def test_create_account(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = create_account(client, auth_headers)

        assert body["account_id"] == "user-1"
        assert body["credits"] == 100
        assert body["plan_tier"] == "free"
        assert body["effective_tier"] == "pro"
        assert body["status"] == "active"
        assert body["trial_ends_at"] is not None
        assert body["subscription"] is None

    def test_create_account_is_idempotent(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        first = create_account(client, auth_headers)
        second = create_account(client, auth_headers)

        assert second["credits"] == 100
        assert second["trial_ends_at"] == first["trial_ends_at"]

    def test_create_account_blank_id(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        response = client.post("/v1/accounts", json={"account_id": "   "}, headers=auth_headers)
        assert response.status_code == 422

    def test_get_account(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)

        response = client.get("/v1/accounts/user-1", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["customer_email"] == "user-1@example.com"

    def test_get_missing_account(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.get("/v1/accounts/nobody", headers=auth_headers)
        assert response.status_code == 404

    def test_entitlement(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)

        response = client.get("/v1/accounts/user-1/entitlement", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "pro"
        assert body["plan_tier"] == "free"
        assert body["is_trial"] is True
        assert body["capabilities"]["max_video_duration_seconds"] == 18
        assert body["capabilities"]["ai_credit_ceiling"] is None

    def test_entitlement_missing_account(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        response = client.get("/v1/accounts/nobody/entitlement", headers=auth_headers)
        assert response.status_code == 404

    def test_close_account(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)

        response = client.post("/v1/accounts/user-1/close", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "closed"

    def test_close_with_active_subscription(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)
        post_stripe(client, recent_stripe_event("evt_1", metadata={"account_id": "user-1"}))

        response = client.post("/v1/accounts/user-1/close", headers=auth_headers)

        assert response.status_code == 409

    def test_close_missing_account(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        response = client.post("/v1/accounts/nobody/close", headers=auth_headers)
        assert response.status_code == 404


class TestSubscriptionLink:
    """Tests for /v1/accounts/{account_id}/subscription-link."""

    def test_link_replays_parked_events(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)
        parked = post_stripe(client, recent_stripe_event("evt_1", customer="cus_new"))
        assert parked.status_code == 202

        response = client.post(
            "/v1/accounts/user-1/subscription-link",
            json={"provider": "stripe", "customer_id": "cus_new", "subscription_id": "sub_123"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["reprocessed_events"] == 1
        account = client.get("/v1/accounts/user-1", headers=auth_headers).json()
        assert account["plan_tier"] == "pro"
        assert account["credits"] == 600
        assert account["subscription"]["customer_id"] == "cus_new"

    def test_link_missing_account(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        response = client.post(
            "/v1/accounts/nobody/subscription-link",
            json={"provider": "stripe", "customer_id": "cus_new"},
            headers=auth_headers,
        )
        assert response.status_code == 404

    def test_link_customer_owned_by_other_account(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers, "user-1")
        create_account(client, auth_headers, "user-2")
        link = {"provider": "paypal", "customer_id": "PAYER123"}
        client.post("/v1/accounts/user-1/subscription-link", json=link, headers=auth_headers)

        response = client.post(
            "/v1/accounts/user-2/subscription-link", json=link, headers=auth_headers
        )

        assert response.status_code == 409

    def test_link_unknown_provider(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)
        response = client.post(
            "/v1/accounts/user-1/subscription-link",
            json={"provider": "bitcoin", "customer_id": "x"},
            headers=auth_headers,
        )
        assert response.status_code == 422


# ============================================================================
# Admin
# ============================================================================


class TestAdminRoutes:
    """Tests for /v1/admin."""

    def test_ledger_report(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)

        response = client.get("/v1/admin/accounts/user-1/ledger", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["balanced"] is True
        assert body["ledger_total"] == 100
        assert body["entries"][0]["reason"] == "trial_grant"

    def test_ledger_report_read_does_not_freeze(
        self, client: TestClient, auth_headers: dict[str, str], store: MemoryBillingStore
    ) -> None:
        create_account(client, auth_headers)
        store._tables[Account]["user-1"].credits = 999  # type: ignore[attr-defined]

        response = client.get("/v1/admin/accounts/user-1/ledger", headers=auth_headers)

        assert response.json()["balanced"] is False
        account = client.get("/v1/accounts/user-1", headers=auth_headers).json()
        assert account["status"] == "active"

    def test_ledger_report_freezes_unbalanced_account(
        self, client: TestClient, auth_headers: dict[str, str], store: MemoryBillingStore
    ) -> None:
        create_account(client, auth_headers)
        store._tables[Account]["user-1"].credits = 999  # type: ignore[attr-defined]

        response = client.get(
            "/v1/admin/accounts/user-1/ledger", params={"freeze": "true"}, headers=auth_headers
        )

        assert response.json()["balanced"] is False
        account = client.get("/v1/accounts/user-1", headers=auth_headers).json()
        assert account["status"] == "frozen"

        unfreeze = client.post("/v1/admin/accounts/user-1/unfreeze", headers=auth_headers)
        assert unfreeze.status_code == 409

    @pytest.mark.parametrize(
        ("method", "path", "body"),
        [
            ("set_plan_tier", "plan", {"plan_tier": "pro", "reason": "support"}),
            ("unfreeze", "unfreeze", None),
        ],
    )
    def test_account_override_storage_conflict(
        self,
        client: TestClient,
        auth_headers: dict[str, str],
        method: str,
        path: str,
        body: dict[str, str] | None,
    ) -> None:
        service = MagicMock()
        setattr(service, method, AsyncMock(side_effect=StorageConflictError("lock timeout")))
        app.dependency_overrides[get_account_service] = lambda: service

        response = client.post(
            f"/v1/admin/accounts/user-1/{path}", json=body, headers=auth_headers
        )

        assert response.status_code == 503
        assert response.json()["detail"] == "Concurrent update, retry"

    def test_grant_credits(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)
        grant = {"amount": 50, "description": "support goodwill", "idempotency_key": "ticket-7"}

        first = client.post("/v1/admin/accounts/user-1/grants", json=grant, headers=auth_headers)
        second = client.post("/v1/admin/accounts/user-1/grants", json=grant, headers=auth_headers)

        assert first.status_code == 201
        assert first.json()["balance_after"] == 150
        assert second.json()["entry_id"] == first.json()["entry_id"]

    def test_grant_conflicting_amount(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)
        url = "/v1/admin/accounts/user-1/grants"
        client.post(
            url,
            json={"amount": 50, "description": "a", "idempotency_key": "k"},
            headers=auth_headers,
        )

        response = client.post(
            url,
            json={"amount": 60, "description": "a", "idempotency_key": "k"},
            headers=auth_headers,
        )

        assert response.status_code == 409

    def test_grant_to_frozen_account(
        self, client: TestClient, auth_headers: dict[str, str], store: MemoryBillingStore
    ) -> None:
        create_account(client, auth_headers)
        store._tables[Account]["user-1"].status = "frozen"  # type: ignore[attr-defined]

        response = client.post(
            "/v1/admin/accounts/user-1/grants",
            json={"amount": 50, "description": "a"},
            headers=auth_headers,
        )

        assert response.status_code == 423

    def test_grant_rejects_non_positive(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)
        response = client.post(
            "/v1/admin/accounts/user-1/grants",
            json={"amount": 0, "description": "a"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_grant_missing_account(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        response = client.post(
            "/v1/admin/accounts/nobody/grants",
            json={"amount": 5, "description": "a"},
            headers=auth_headers,
        )
        assert response.status_code == 404

    def test_set_plan(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)

        response = client.post(
            "/v1/admin/accounts/user-1/plan",
            json={"plan_tier": "premium", "reason": "partner promo"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["plan_tier"] == "premium"
        assert response.json()["credits"] == 100

    def test_sweep_and_parked_retry(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        sweep = client.post("/v1/admin/reservations/sweep?limit=10", headers=auth_headers)
        retry = client.post("/v1/admin/parked-events/retry", headers=auth_headers)

        assert sweep.json() == {"released": 0}
        assert retry.json() == {"attempted": 0, "applied": 0, "still_parked": 0}


# ============================================================================
# Webhooks
# ============================================================================


class TestStripeWebhook:
    """Tests for /v1/webhooks/stripe."""

    def test_applies_subscription(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)

        response = post_stripe(
            client, recent_stripe_event("evt_1", metadata={"account_id": "user-1"})
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "event_id": "evt_1", "outcome": "applied"}
        account = client.get("/v1/accounts/user-1", headers=auth_headers).json()
        assert account["plan_tier"] == "pro"

    def test_duplicate_delivery(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        create_account(client, auth_headers)
        event = recent_stripe_event("evt_1", metadata={"account_id": "user-1"})

        post_stripe(client, event)
        response = post_stripe(client, event)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate_ignored"

    def test_bad_signature(self, client: TestClient) -> None:
        payload = json.dumps(recent_stripe_event("evt_1")).encode()

        response = client.post(
            "/v1/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": stripe_signature_header(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 401

    def test_malformed_event(self, client: TestClient) -> None:
        response = post_stripe(client, recent_stripe_event("evt_1", status="mystery"))
        assert response.status_code == 400

    def test_frozen_account_asks_for_redelivery(
        self, client: TestClient, auth_headers: dict[str, str], store: MemoryBillingStore
    ) -> None:
        create_account(client, auth_headers)
        store._tables[Account]["user-1"].status = "frozen"  # type: ignore[attr-defined]

        response = post_stripe(
            client, recent_stripe_event("evt_1", metadata={"account_id": "user-1"})
        )

        assert response.status_code == 503

    def test_provider_not_configured(self, client: TestClient) -> None:
        app.dependency_overrides[get_stripe_provider] = lambda: None

        response = post_stripe(client, recent_stripe_event("evt_1"))

        assert response.status_code == 503


class TestPayPalWebhook:
    """Tests for /v1/webhooks/paypal."""

    def test_applies_subscription(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        create_account(client, auth_headers)
        event = paypal_subscription_event("WH-1", datetime.now(UTC))

        response = client.post(
            "/v1/webhooks/paypal", content=json.dumps(event).encode(), headers=PAYPAL_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        account = client.get("/v1/accounts/user-1", headers=auth_headers).json()
        assert account["plan_tier"] == "pro"
        assert account["subscription"]["provider"] == "paypal"

    def test_rejected_verification(
        self, client: TestClient, paypal_verification: dict[str, Any]
    ) -> None:
        paypal_verification["status"] = "FAILURE"
        event = paypal_subscription_event("WH-1", datetime.now(UTC))

        response = client.post(
            "/v1/webhooks/paypal", content=json.dumps(event).encode(), headers=PAYPAL_HEADERS
        )

        assert response.status_code == 401

    def test_missing_headers(self, client: TestClient) -> None:
        response = client.post("/v1/webhooks/paypal", content=b"{}")
        assert response.status_code == 401

    def test_provider_not_configured(self, client: TestClient) -> None:
        app.dependency_overrides[get_paypal_provider] = lambda: None

        response = client.post(
            "/v1/webhooks/paypal", content=b"{}", headers=PAYPAL_HEADERS
        )

        assert response.status_code == 503


# ============================================================================
# Health Check
# ============================================================================


class TestHealthCheckRoute:
    """Tests for health_check route function."""

    async def test_health_check_success(self) -> None:
        """Health check returns healthy when database connected."""
        from novavid_billing.api.routes import health_check

        session = AsyncMock()

        @asynccontextmanager
        async def fake_session() -> AsyncIterator[AsyncMock]:
            yield session

        with patch("novavid_billing.api.routes.get_session", fake_session):
            result = await health_check()

        assert result.status == "healthy"
        assert result.database == "connected"
        session.execute.assert_awaited_once()

    async def test_health_check_database_error(self) -> None:
        """Health check raises 503 when database fails."""
        from novavid_billing.api.routes import health_check

        session = AsyncMock()
        session.execute = AsyncMock(side_effect=Exception("Connection refused"))

        @asynccontextmanager
        async def fake_session() -> AsyncIterator[AsyncMock]:
            yield session

        with patch("novavid_billing.api.routes.get_session", fake_session):
            with pytest.raises(HTTPException) as exc_info:
                await health_check()

        assert exc_info.value.status_code == 503

    async def test_health_check_memory_backend(self) -> None:
        """The memory backend reports healthy without touching a database."""
        from novavid_billing.api.routes import health_check

        with (
            patch("novavid_billing.api.routes.settings") as settings,
            patch("novavid_billing.api.routes.get_session") as get_session,
        ):
            settings.store_backend = "memory"
            result = await health_check()

        assert result.status == "healthy"
        assert result.database == "memory"
        get_session.assert_not_called()

    def test_root(self, client: TestClient) -> None:
        response = client.get("/")
        assert response.json()["status"] == "running"

    def test_metrics(self, client: TestClient) -> None:
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "billing_http_requests_total" in response.text


class TestStoreSelection:
    """Tests for get_billing_store backend selection."""

    @pytest.fixture(autouse=True)
    def _fresh_cache(self) -> Any:
        get_billing_store.cache_clear()
        yield
        get_billing_store.cache_clear()

    def test_memory_backend(self) -> None:
        with patch("novavid_billing.api.dependencies.settings") as settings:
            settings.store_backend = "memory"
            store = get_billing_store()

        assert isinstance(store, MemoryBillingStore)

    def test_postgres_backend(self) -> None:
        with (
            patch("novavid_billing.api.dependencies.settings") as settings,
            patch("novavid_billing.api.dependencies.get_session_factory") as factory,
        ):
            settings.store_backend = "postgres"
            store = get_billing_store()

        assert not isinstance(store, MemoryBillingStore)
        factory.assert_called_once()
