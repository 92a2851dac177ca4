"""
Metrics Collection with Prometheus.

Exposes payment orchestration and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    PROVIDER = "provider"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class PaymentMetrics:
    """
    Centralized metrics for the Order Payments API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Provider calls (rate, duration, outcome per provider and operation)
    - Webhooks (accepted / rejected per provider)
    - Reconciliation (applied / no-op / conflict)
    - Credential refreshes and status polls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "payments_service",
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
            "payments_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "payments_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "payments_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.provider_calls_total = Counter(
            "payments_provider_calls_total",
            "Outbound provider calls",
            [MetricLabels.PROVIDER, MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.provider_call_duration_seconds = Histogram(
            "payments_provider_call_duration_seconds",
            "Outbound provider call duration in seconds",
            [MetricLabels.PROVIDER, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
        )

        self.intents_created_total = Counter(
            "payments_intents_created_total",
            "Payment intents created",
            [MetricLabels.PROVIDER],
        )

        self.intent_amount_minor = Histogram(
            "payments_intent_amount_minor",
            "Intent amounts in minor units",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 500000),
        )

        # ====================================================================
        # Webhook and Reconciliation Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "payments_webhooks_total",
            "Inbound webhooks by final state",
            [MetricLabels.PROVIDER, "state"],
        )

        self.reconciliations_total = Counter(
            "payments_reconciliations_total",
            "Payment events applied by the reconciliation engine",
            [MetricLabels.PROVIDER, "channel", "action", "conflict"],
        )

        # ====================================================================
        # Credential and Poll Metrics
        # ====================================================================
        self.credential_refreshes_total = Counter(
            "payments_credential_refreshes_total",
            "Provider token refreshes",
            [MetricLabels.PROVIDER, "success"],
        )

        self.polls_total = Counter(
            "payments_status_polls_total",
            "Status polls by final outcome",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "payments_errors_total",
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

    def record_provider_call(
        self, provider: str, operation: str, outcome: str, duration: float
    ) -> None:
        """Record one outbound provider call."""
        self.provider_calls_total.labels(
            provider=provider, operation=operation, outcome=outcome
        ).inc()
        self.provider_call_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration)

    def record_intent_created(self, provider: str, amount_minor: int) -> None:
        """Record a created payment intent."""
        self.intents_created_total.labels(provider=provider).inc()
        self.intent_amount_minor.observe(amount_minor)

    def record_webhook(self, provider: str, state: str) -> None:
        """Record the final state of an inbound webhook."""
        self.webhooks_total.labels(provider=provider, state=state).inc()

    def record_reconciliation(
        self, provider: str, channel: str, action: str, conflict: bool
    ) -> None:
        """Record a reconciliation decision."""
        self.reconciliations_total.labels(
            provider=provider, channel=channel, action=action, conflict=str(conflict)
        ).inc()

    def record_credential_refresh(self, provider: str, success: bool) -> None:
        """Record a token refresh attempt."""
        self.credential_refreshes_total.labels(provider=provider, success=str(success)).inc()

    def record_poll(self, provider: str, outcome: str) -> None:
        """Record how a status poll ended."""
        self.polls_total.labels(provider=provider, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PaymentMetrics()


class track_provider_call:
    """
    Context manager for timing outbound provider calls.

    Usage:
        with track_provider_call("bill_gateway", "create_payment"):
            response = await client.post(...)
    """

    def __init__(self, provider: str, operation: str) -> None:
        self.provider = provider
        self.operation = operation
        self.start_time: float = 0.0

    def __enter__(self) -> "track_provider_call":
        """Start tracking."""
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.monotonic() - self.start_time
        outcome = "success" if exc_type is None else exc_type.__name__
        metrics.record_provider_call(self.provider, self.operation, outcome, duration)
