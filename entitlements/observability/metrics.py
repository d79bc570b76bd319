"""
Metrics Collection with Prometheus.

Exposes reconciliation, provider connection and purchase metrics.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from entitlements.config import settings
from entitlements.models.domain import ConnectionPhase


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRIGGER = "trigger"
    OUTCOME = "outcome"
    SOURCE = "source"
    ERROR_TYPE = "error_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlement service.

    Covers:
    - HTTP requests (rate, duration)
    - Reconciliations (rate by trigger/outcome, duration)
    - Published verdicts (by source and entitlement)
    - Provider connection (attempts, current phase)
    - Purchase events, anomalies, acknowledgements
    - Ledger failures and catalog queries
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "entitlement_service",
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
            "entitlement_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "entitlement_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "entitlement_reconciliations_total",
            "Reconciliation runs by trigger and outcome",
            [MetricLabels.TRIGGER, MetricLabels.OUTCOME],
        )

        self.reconciliation_duration_seconds = Histogram(
            "entitlement_reconciliation_duration_seconds",
            "Reconciliation duration in seconds",
            [MetricLabels.TRIGGER],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 4.0, 5.0),
        )

        self.debounced_verifications_total = Counter(
            "entitlement_debounced_verifications_total",
            "Verifications answered from the validity window without I/O",
        )

        self.verdicts_published_total = Counter(
            "entitlement_verdicts_published_total",
            "Verdicts published by source",
            [MetricLabels.SOURCE, "is_entitled"],
        )

        # ====================================================================
        # Provider Connection Metrics
        # ====================================================================
        self.connection_attempts_total = Counter(
            "entitlement_provider_connection_attempts_total",
            "Provider connection attempts",
            ["success"],
        )

        self.connection_phase = Gauge(
            "entitlement_provider_connection_phase",
            "1 for the current provider connection phase, 0 otherwise",
            ["phase"],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchase_events_total = Counter(
            "entitlement_purchase_events_total",
            "Purchase notifications by response code and purchase state",
            ["response_code", "state"],
        )

        self.anomalies_total = Counter(
            "entitlement_anomalies_total",
            "Ownership reports inconsistent with the account",
        )

        self.acknowledgements_total = Counter(
            "entitlement_acknowledgements_total",
            "Purchase acknowledgement requests",
            ["success"],
        )

        self.catalog_queries_total = Counter(
            "entitlement_catalog_queries_total",
            "Catalog query phases",
            ["phase", "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.ledger_errors_total = Counter(
            "entitlement_ledger_errors_total",
            "Remote ledger failures",
            [MetricLabels.OPERATION],
        )

        self.errors_total = Counter(
            "entitlement_errors_total",
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

    def record_reconciliation(self, trigger: str, outcome: str, duration: float) -> None:
        """Record a finished (or abandoned) reconciliation."""
        self.reconciliations_total.labels(trigger=trigger, outcome=outcome).inc()
        self.reconciliation_duration_seconds.labels(trigger=trigger).observe(duration)

    def record_verdict(self, source: str, is_entitled: bool) -> None:
        self.verdicts_published_total.labels(source=source, is_entitled=str(is_entitled)).inc()

    def record_connection_phase(self, phase: ConnectionPhase) -> None:
        """Flip the phase gauge so exactly one phase reads 1."""
        for candidate in ConnectionPhase:
            self.connection_phase.labels(phase=candidate.value).set(
                1 if candidate == phase else 0
            )

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()
