"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from paygate.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    GATEWAY = "gateway"
    OPERATION = "operation"
    OUTCOME = "outcome"
    SOURCE = "source"
    ERROR_TYPE = "error_type"


class PaymentMetrics:
    """
    Centralized metrics for the payment gateway service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Intents and confirmations per gateway
    - Duplicate deliveries suppressed by the idempotency store
    - Ledger writes (payments, refunds, amounts)
    - Gateway calls (duration, retries) and integrity failures
    - Background maintenance and event publishing
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "paygate_service",
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
            "paygate_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "paygate_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "paygate_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Intent & Confirmation Metrics
        # ====================================================================
        self.intents_total = Counter(
            "paygate_intents_total",
            "Payment intents initiated",
            [MetricLabels.GATEWAY, MetricLabels.OUTCOME],
        )

        self.confirmations_total = Counter(
            "paygate_confirmations_total",
            "Confirmations processed",
            [MetricLabels.GATEWAY, MetricLabels.SOURCE, MetricLabels.OUTCOME],
        )

        self.duplicates_suppressed_total = Counter(
            "paygate_duplicates_suppressed_total",
            "Duplicate verify/webhook deliveries answered from the idempotency store",
            [MetricLabels.GATEWAY, MetricLabels.SOURCE],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.payments_recorded_total = Counter(
            "paygate_payments_recorded_total",
            "Payments written to the ledger",
            [MetricLabels.GATEWAY, "out_of_band"],
        )

        self.payment_amount_minor = Histogram(
            "paygate_payment_amount_minor",
            "Payment amounts in minor units",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 500000),
        )

        self.refunds_total = Counter(
            "paygate_refunds_total",
            "Refunds by final status",
            [MetricLabels.GATEWAY, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Gateway Metrics
        # ====================================================================
        self.gateway_call_duration_seconds = Histogram(
            "paygate_gateway_call_duration_seconds",
            "Provider call duration in seconds",
            [MetricLabels.GATEWAY, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.gateway_retries_total = Counter(
            "paygate_gateway_retries_total",
            "Provider calls retried after GatewayUnavailable",
            [MetricLabels.GATEWAY, MetricLabels.OPERATION],
        )

        self.integrity_failures_total = Counter(
            "paygate_integrity_failures_total",
            "Signature and amount verification failures",
            [MetricLabels.GATEWAY, MetricLabels.ERROR_TYPE],
        )

        # ====================================================================
        # Maintenance & Events
        # ====================================================================
        self.intents_expired_total = Counter(
            "paygate_intents_expired_total",
            "Intents moved to expired by the sweeper",
        )

        self.idempotency_records_purged_total = Counter(
            "paygate_idempotency_records_purged_total",
            "Idempotency records removed after retention",
        )

        self.event_publish_failures_total = Counter(
            "paygate_event_publish_failures_total",
            "Events the publisher failed to deliver",
            ["event_type"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "paygate_errors_total",
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

    def record_confirmation(self, gateway: str, source: str, outcome: str) -> None:
        """Record a processed confirmation."""
        self.confirmations_total.labels(gateway=gateway, source=source, outcome=outcome).inc()

    def record_payment(self, gateway: str | None, amount_minor: int, out_of_band: bool) -> None:
        """Record a ledger payment."""
        self.payments_recorded_total.labels(
            gateway=gateway or "manual", out_of_band=str(out_of_band)
        ).inc()
        self.payment_amount_minor.observe(amount_minor)

    def record_integrity_failure(self, gateway: str, error_type: str) -> None:
        """Record a signature or amount failure."""
        self.integrity_failures_total.labels(gateway=gateway, error_type=error_type).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PaymentMetrics()


class track_gateway_call:
    """
    Context manager for timing provider calls.

    Usage:
        with track_gateway_call("card-hosted", "initiate"):
            await adapter.initiate(...)
    """

    def __init__(self, gateway: str, operation: str) -> None:
        self.gateway = gateway
        self.operation = operation
        self.start_time: float = 0.0

    def __enter__(self) -> "track_gateway_call":
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        metrics.gateway_call_duration_seconds.labels(
            gateway=self.gateway, operation=self.operation
        ).observe(time.monotonic() - self.start_time)
