"""
Metrics Collection with Prometheus.

Exposes entitlement pipeline metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from adfree.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    OUTCOME = "outcome"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlement service.

    Covers:
    - HTTP requests (rate, duration)
    - Receipt verifications (outcome, duration)
    - Webhook notifications (type, outcome)
    - Recomputations (resulting status)
    - Purchase gate decisions
    """

    def __init__(self) -> None:
        self.service_info = Info(
            "adfree_service",
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
            "adfree_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "adfree_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "adfree_http_requests_in_progress",
            "HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Receipt Verification Metrics
        # ====================================================================
        self.verifications_total = Counter(
            "adfree_receipt_verifications_total",
            "Receipt verifications by outcome",
            [MetricLabels.OUTCOME],
        )

        self.verification_duration_seconds = Histogram(
            "adfree_receipt_verification_duration_seconds",
            "Receipt verification duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Notification Metrics
        # ====================================================================
        self.notifications_total = Counter(
            "adfree_notifications_total",
            "Store notifications by type and outcome",
            ["notification_type", MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.recomputations_total = Counter(
            "adfree_recomputations_total",
            "Derived status recomputations",
            ["is_ad_free"],
        )

        self.gate_decisions_total = Counter(
            "adfree_purchase_gate_decisions_total",
            "Purchase gate decisions",
            ["allowed", "reason"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "adfree_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

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

    def record_verification(self, outcome: str, duration: float) -> None:
        """Record a receipt verification."""
        self.verifications_total.labels(outcome=outcome).inc()
        self.verification_duration_seconds.observe(duration)

    def record_notification(self, notification_type: str, outcome: str) -> None:
        """Record a processed store notification."""
        self.notifications_total.labels(
            notification_type=notification_type or "unknown", outcome=outcome
        ).inc()

    def record_recompute(self, is_ad_free: bool) -> None:
        self.recomputations_total.labels(is_ad_free=str(is_ad_free)).inc()

    def record_gate_decision(self, allowed: bool, reason: str | None) -> None:
        self.gate_decisions_total.labels(allowed=str(allowed), reason=reason or "none").inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()
