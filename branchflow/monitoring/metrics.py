"""
Prometheus metrics for the orchestration engine.

Counters mirror the audit trail so a scrape endpoint can alert on retry
storms or fallback usage without querying the audit sink. The audit-derived
:class:`~branchflow.models.domain.MetricsSnapshot` remains the source of
truth for reporting.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry(auto_describe=True)

operations_total = Counter(
    "branchflow_operations_total",
    "Audited operations",
    ["operation", "outcome"],
    registry=REGISTRY,
)

operation_duration = Histogram(
    "branchflow_operation_duration_seconds",
    "Duration of audited operations",
    ["operation"],
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 300),
    registry=REGISTRY,
)

active_workflows = Gauge(
    "branchflow_active_workflows",
    "Workflow runs that have not reached a resting state",
    registry=REGISTRY,
)

audit_write_failures = Counter(
    "branchflow_audit_write_failures_total",
    "Audit entries that could not be written to the sink",
    registry=REGISTRY,
)


class MetricsCollector:
    """Record engine metrics."""

    @staticmethod
    def record_operation(operation: str, outcome: str, duration_ms: float) -> None:
        operations_total.labels(operation=operation, outcome=outcome).inc()
        if duration_ms > 0:
            operation_duration.labels(operation=operation).observe(duration_ms / 1000.0)

    @staticmethod
    def record_audit_failure() -> None:
        audit_write_failures.inc()

    @staticmethod
    def workflow_started() -> None:
        active_workflows.inc()

    @staticmethod
    def workflow_finished() -> None:
        active_workflows.dec()

    @staticmethod
    def get_metrics() -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(REGISTRY)
