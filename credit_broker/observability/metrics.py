"""
Metrics Collection with Prometheus.

Exposes ledger, webhook and provider metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from credit_broker.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    OUTCOME = "outcome"


class BrokerMetrics:
    """
    Centralized metrics for the credit broker.

    Covers:
    - HTTP requests (rate, duration)
    - Reservations and refunds (rate, amounts, tier used)
    - Webhook handling (outcome, retries, final failures)
    - Provider calls (outcome)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "broker_service",
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
            "broker_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "broker_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "broker_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.reservations_total = Counter(
            "broker_reservations_total",
            "Total credit reservations attempted",
            ["success", "tier"],
        )

        self.reserved_credits = Histogram(
            "broker_reserved_credits",
            "Credits reserved per reservation",
            buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000),
        )

        self.refunds_total = Counter(
            "broker_refunds_total",
            "Total compensating refunds attempted",
            ["success"],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "broker_webhooks_total",
            "Total provider webhooks by outcome",
            [MetricLabels.OUTCOME],
        )

        self.webhook_retries_total = Counter(
            "broker_webhook_retries_total",
            "Total webhook processing retries",
        )

        self.webhook_final_failures_total = Counter(
            "broker_webhook_final_failures_total",
            "Webhooks that exhausted all retry attempts",
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.provider_calls_total = Counter(
            "broker_provider_calls_total",
            "Total provider prediction requests by outcome",
            [MetricLabels.OUTCOME],
        )

        self.errors_total = Counter(
            "broker_errors_total",
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

    def record_reservation(self, success: bool, amount: int, tier: str | None = None) -> None:
        """Record reservation metrics."""
        self.reservations_total.labels(success=str(success), tier=tier or "none").inc()
        if success:
            self.reserved_credits.observe(amount)

    def record_refund(self, success: bool) -> None:
        """Record refund metrics."""
        self.refunds_total.labels(success=str(success)).inc()

    def record_webhook(self, outcome: str) -> None:
        """Record webhook outcome."""
        self.webhooks_total.labels(outcome=outcome).inc()

    def record_provider_call(self, outcome: str) -> None:
        """Record provider call outcome."""
        self.provider_calls_total.labels(outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BrokerMetrics()
