"""
Observability module - Logging, Metrics, and Tracing.
"""

from novavid_billing.observability.logging import get_logger, log_context, setup_logging
from novavid_billing.observability.metrics import metrics
from novavid_billing.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
