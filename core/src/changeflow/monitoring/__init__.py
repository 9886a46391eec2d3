"""Metrics for changeflow operations."""

from changeflow.monitoring.metrics import MetricsCollector, RefreshMetrics

__all__ = ["MetricsCollector", "RefreshMetrics"]
