"""Prometheus metrics."""

from incident_pipeline.infrastructure.monitoring.metrics_collector import MetricsCollector

__all__ = ["MetricsCollector"]
