"""
Tests for structured logging processors.
"""

from novavid_billing.observability.logging import log_context, mask_sensitive


class TestMaskSensitive:
    """Tests for the mask_sensitive processor."""

    def test_masks_email_keeping_domain(self):
        event = mask_sensitive(
            None, "info", {"event": "account_registered", "customer_email": "jane@example.com"}
        )
        assert event["customer_email"] == "j***@example.com"

    def test_masks_credentials(self):
        event = mask_sensitive(
            None, "info", {"event": "x", "api_key": "secret", "stripe_signature": "t=1,v1=abc"}
        )
        assert event["api_key"] == "***"
        assert event["stripe_signature"] == "***"

    def test_leaves_other_fields(self):
        event = mask_sensitive(
            None, "info", {"event": "x", "account_id": "user-1", "api_key": None}
        )
        assert event["account_id"] == "user-1"
        assert event["api_key"] is None


class TestLogContext:
    """Tests for log_context binding."""

    def test_binds_and_unbinds(self):
        import structlog

        with log_context(request_id="req-1", account_id="user-1"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["request_id"] == "req-1"
            assert bound["account_id"] == "user-1"

        assert "request_id" not in structlog.contextvars.get_contextvars()
