"""
Observability module - Logging, Metrics, and Tracing.
"""

from credit_broker.observability.logging import get_logger, log_context, setup_logging
from credit_broker.observability.metrics import metrics
from credit_broker.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
