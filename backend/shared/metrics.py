"""
Prometheus Metrics Collector
============================
Counters for the approval workflow and login security.
"""

from typing import Optional

from prometheus_client import Counter, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
import structlog

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Central metrics collector.

    Tracks:
    - Workflow transitions and version conflicts
    - Audit write failures
    - Login failures and lockouts
    - OTP issuance and verification
    """

    def __init__(self, namespace: str = "invoice_approvals", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()

        self.http_requests_total = Counter(
            f"{namespace}_http_requests_total",
            "Total HTTP requests",
            ["method", "status"],
            registry=self.registry,
        )
        self.workflow_transitions_total = Counter(
            f"{namespace}_workflow_transitions_total",
            "Workflow transitions committed",
            ["from_status", "to_status"],
            registry=self.registry,
        )
        self.version_conflicts_total = Counter(
            f"{namespace}_version_conflicts_total",
            "Writes rejected by the optimistic version check",
            registry=self.registry,
        )
        self.audit_failures_total = Counter(
            f"{namespace}_audit_failures_total",
            "Audit events that could not be written",
            registry=self.registry,
        )
        self.login_failures_total = Counter(
            f"{namespace}_login_failures_total",
            "Failed login attempts recorded",
            registry=self.registry,
        )
        self.lockouts_total = Counter(
            f"{namespace}_lockouts_total",
            "Accounts moved into a lockout window",
            registry=self.registry,
        )
        self.otp_issued_total = Counter(
            f"{namespace}_otp_issued_total",
            "One-time codes issued",
            registry=self.registry,
        )
        self.otp_verifications_total = Counter(
            f"{namespace}_otp_verifications_total",
            "One-time code verifications",
            ["result"],
            registry=self.registry,
        )

    def record_http_request(self, method: str, status: int) -> None:
        self.http_requests_total.labels(method=method, status=str(status)).inc()

    def record_transition(self, from_status: str, to_status: str) -> None:
        self.workflow_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    def record_version_conflict(self) -> None:
        self.version_conflicts_total.inc()

    def record_audit_failure(self) -> None:
        self.audit_failures_total.inc()

    def record_login_failure(self, locked: bool) -> None:
        self.login_failures_total.inc()
        if locked:
            self.lockouts_total.inc()

    def record_otp_issued(self) -> None:
        self.otp_issued_total.inc()

    def record_otp_verification(self, ok: bool) -> None:
        self.otp_verifications_total.labels(result="ok" if ok else "failed").inc()

    def get_metrics(self) -> bytes:
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get or create the process metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
        logger.info("Metrics collector initialized", namespace=_metrics.namespace)
    return _metrics
