#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics for the incident pipeline:
- Enqueues by tier and backend, fallback enqueues and promotions
- Job outcomes (completed, retried, stalled, dead-lettered)
- Job handler duration histograms by tier
- Emergency direct-path outcomes
- Circuit breaker state and connection health score
- Queue depth per tier

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Histogram buckets for latency percentiles
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from incident_pipeline.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

JOBS_ENQUEUED = Counter(
    'incident_jobs_enqueued_total',
    'Jobs accepted by a queue backend',
    ['tier', 'backend']
)

FALLBACK_ENQUEUES = Counter(
    'incident_fallback_enqueues_total',
    'Jobs diverted to the in-process fallback queue',
    ['tier', 'reason']
)

FALLBACK_PROMOTIONS = Counter(
    'incident_fallback_promotions_total',
    'Jobs moved from the fallback queue back to the broker',
    ['tier']
)

ENQUEUE_FAILURES = Counter(
    'incident_enqueue_failures_total',
    'Jobs that no backend could accept',
    ['tier']
)

JOBS_COMPLETED = Counter(
    'incident_jobs_completed_total',
    'Jobs whose handler completed',
    ['tier']
)

JOBS_RETRIED = Counter(
    'incident_jobs_retried_total',
    'Jobs rescheduled after a handler failure',
    ['tier']
)

JOBS_STALLED = Counter(
    'incident_jobs_stalled_total',
    'Jobs reclaimed after exceeding their processing budget',
    ['tier']
)

JOBS_DEAD_LETTERED = Counter(
    'incident_jobs_dead_lettered_total',
    'Jobs moved to the dead-letter store',
    ['tier', 'reason']
)

JOB_DURATION = Histogram(
    'incident_job_duration_seconds',
    'Handler execution time',
    ['tier'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

DIRECT_PATH_OUTCOMES = Counter(
    'incident_direct_path_total',
    'Emergency direct-path outcomes',
    ['outcome']  # inline_success, degraded_record, fatal
)

CIRCUIT_BREAKER_STATE = Gauge(
    'incident_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['circuit']
)

CONNECTION_HEALTH_SCORE = Gauge(
    'incident_connection_health_score',
    'Broker connection health score (0-100)'
)

QUEUE_DEPTH = Gauge(
    'incident_queue_depth',
    'Waiting plus delayed jobs per tier and backend',
    ['tier', 'backend']
)

APP_INFO = Info(
    'incident_pipeline',
    'Application information'
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = MetricsCollector()
        metrics.record_enqueue("Emergency", "broker")
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self, app_name: str = "Incident Pipeline", version: str = "1.0.0", environment: str = "development"):
        APP_INFO.info({
            'version': version,
            'environment': environment,
            'app_name': app_name,
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Queue Metrics
    # =========================================================================

    def record_enqueue(self, tier: str, backend: str) -> None:
        JOBS_ENQUEUED.labels(tier=tier, backend=backend).inc()

    def record_fallback_enqueue(self, tier: str, reason: str) -> None:
        FALLBACK_ENQUEUES.labels(tier=tier, reason=reason).inc()

    def record_fallback_promotion(self, tier: str, count: int = 1) -> None:
        FALLBACK_PROMOTIONS.labels(tier=tier).inc(count)

    def record_enqueue_failure(self, tier: str) -> None:
        ENQUEUE_FAILURES.labels(tier=tier).inc()

    def record_queue_depth(self, tier: str, backend: str, depth: int) -> None:
        QUEUE_DEPTH.labels(tier=tier, backend=backend).set(depth)

    # =========================================================================
    # Job Outcome Metrics
    # =========================================================================

    def record_job_completed(self, tier: str, duration_seconds: float) -> None:
        JOBS_COMPLETED.labels(tier=tier).inc()
        JOB_DURATION.labels(tier=tier).observe(duration_seconds)

    def record_job_retried(self, tier: str) -> None:
        JOBS_RETRIED.labels(tier=tier).inc()

    def record_job_stalled(self, tier: str) -> None:
        JOBS_STALLED.labels(tier=tier).inc()

    def record_dead_letter(self, tier: str, reason: str) -> None:
        JOBS_DEAD_LETTERED.labels(tier=tier, reason=reason).inc()

    def record_direct_path(self, outcome: str) -> None:
        DIRECT_PATH_OUTCOMES.labels(outcome=outcome).inc()

    # =========================================================================
    # Connection Metrics
    # =========================================================================

    def set_circuit_state(self, circuit: str, state: str) -> None:
        """Set circuit breaker state."""
        state_value = {"closed": 0, "half_open": 1, "open": 2}.get(state, 0)
        CIRCUIT_BREAKER_STATE.labels(circuit=circuit).set(state_value)

    def set_health_score(self, score: float) -> None:
        CONNECTION_HEALTH_SCORE.set(score)

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST
