"""Prometheus metrics export."""

from branchflow.monitoring.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
