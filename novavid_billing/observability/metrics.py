"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from novavid_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    PROVIDER = "provider"
    REASON = "reason"
    ERROR_TYPE = "error_type"


class BillingMetrics:
    """
    Centralized metrics for the NovaVid billing API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Reservations (rate by outcome, amounts)
    - Releases, settlements and grants
    - Webhook ingestion (rate by provider and outcome)
    - Background sweeps and invariant violations
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "billing_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "billing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "billing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.reservations_total = Counter(
            "billing_reservations_total",
            "Credit reservations by outcome",
            [MetricLabels.OUTCOME],
        )

        self.reservation_amount = Histogram(
            "billing_reservation_amount_credits",
            "Reserved credit amounts",
            buckets=(1, 2, 5, 10, 20, 50, 100, 250, 500, 1000),
        )

        self.reservations_resolved_total = Counter(
            "billing_reservations_resolved_total",
            "Reservations settled or released",
            [MetricLabels.OUTCOME],
        )

        self.credits_granted_total = Counter(
            "billing_credits_granted_total",
            "Credits granted to accounts",
            [MetricLabels.REASON],
        )

        self.invariant_violations_total = Counter(
            "billing_invariant_violations_total",
            "Ledger invariant violations (accounts frozen)",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "billing_webhook_events_total",
            "Webhook events by provider and outcome",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        self.plan_transitions_total = Counter(
            "billing_plan_transitions_total",
            "Plan tier changes applied",
            ["from_tier", "to_tier"],
        )

        # ====================================================================
        # Background Work
        # ====================================================================
        self.sweep_released_total = Counter(
            "billing_sweep_released_total",
            "Expired reservations released by the sweeper",
        )

        self.sweep_duration_seconds = Histogram(
            "billing_sweep_duration_seconds",
            "Reservation sweep duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "billing_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_reservation(self, outcome: str, amount: int) -> None:
        """Record a reservation attempt."""
        self.reservations_total.labels(outcome=outcome).inc()
        if outcome == "reserved":
            self.reservation_amount.observe(amount)

    def record_resolution(self, outcome: str) -> None:
        """Record a reservation settle/release."""
        self.reservations_resolved_total.labels(outcome=outcome).inc()

    def record_grant(self, reason: str, amount: int) -> None:
        """Record credits granted."""
        self.credits_granted_total.labels(reason=reason).inc(amount)

    def record_webhook_event(self, provider: str, outcome: str) -> None:
        """Record a webhook ingestion outcome."""
        self.webhook_events_total.labels(provider=provider, outcome=outcome).inc()

    def record_plan_transition(self, from_tier: str, to_tier: str) -> None:
        """Record a plan tier change."""
        self.plan_transitions_total.labels(from_tier=from_tier, to_tier=to_tier).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()
