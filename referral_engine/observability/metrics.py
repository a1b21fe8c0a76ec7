"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from referral_engine.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PLATFORM = "platform"
    OUTCOME = "outcome"
    AWARD_TYPE = "award_type"
    ERROR_TYPE = "error_type"


class ReferralMetrics:
    """
    Centralized metrics for the social referral service.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Submissions by platform and verification outcome
    - Days awarded and billing credits
    - Rescans and workflow steps
    - Slot reclamation
    - Errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "referral_service",
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
            "referral_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "referral_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "referral_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Submission Metrics
        # ====================================================================
        self.submissions_total = Counter(
            "referral_submissions_total",
            "Initial verification outcomes",
            [MetricLabels.PLATFORM, MetricLabels.OUTCOME],
        )

        self.days_awarded_total = Counter(
            "referral_days_awarded_total",
            "Premium days awarded",
            [MetricLabels.AWARD_TYPE],
        )

        self.billing_credits_total = Counter(
            "referral_billing_credits_total",
            "Billing credit attempts",
            ["success"],
        )

        self.billing_credit_amount_minor = Histogram(
            "referral_billing_credit_amount_minor",
            "Billing credit amounts in minor units (cents)",
            buckets=(100, 200, 300, 500, 1000, 1400),
        )

        # ====================================================================
        # Workflow Metrics
        # ====================================================================
        self.rescans_total = Counter(
            "referral_rescans_total",
            "Rescan outcomes",
            [MetricLabels.OUTCOME],
        )

        self.workflow_steps_total = Counter(
            "referral_workflow_steps_total",
            "Workflow steps executed",
            ["step", MetricLabels.OUTCOME],
        )

        self.workflow_step_duration_seconds = Histogram(
            "referral_workflow_step_duration_seconds",
            "Workflow step duration in seconds",
            ["step"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        # ====================================================================
        # Slot Metrics
        # ====================================================================
        self.slots_disabled_total = Counter(
            "referral_slots_disabled_total",
            "Account slots disabled by capacity reductions",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "referral_errors_total",
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

    def record_submission(self, platform: str, outcome: str) -> None:
        self.submissions_total.labels(platform=platform, outcome=outcome).inc()

    def record_days_awarded(self, award_type: str, days: int) -> None:
        if days > 0:
            self.days_awarded_total.labels(award_type=award_type).inc(days)

    def record_billing_credit(self, success: bool, amount_cents: int) -> None:
        """Record billing credit attempt."""
        self.billing_credits_total.labels(success=str(success)).inc()
        if success:
            self.billing_credit_amount_minor.observe(amount_cents)

    def record_rescan(self, outcome: str) -> None:
        self.rescans_total.labels(outcome=outcome).inc()

    def record_workflow_step(self, step: int, outcome: str, duration: float) -> None:
        """Record one executed workflow step."""
        self.workflow_steps_total.labels(step=str(step), outcome=outcome).inc()
        self.workflow_step_duration_seconds.labels(step=str(step)).observe(duration)

    def record_slots_disabled(self, count: int) -> None:
        if count > 0:
            self.slots_disabled_total.inc(count)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ReferralMetrics()
