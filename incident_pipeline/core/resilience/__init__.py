"""
Connection resilience: circuit breaker, health score, pool tracking and the
readiness gate guarding every broker operation.
"""

from incident_pipeline.core.resilience.circuit_breaker import CircuitBreaker, CircuitState
from incident_pipeline.core.resilience.connection_pool import (
    ConnectionPoolTracker,
    ConnectionState,
)
from incident_pipeline.core.resilience.connection_resilience import (
    ConnectionHealth,
    ConnectionResilience,
    HealthEvent,
    Readiness,
)
from incident_pipeline.core.resilience.health_score import HealthScore

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "ConnectionHealth",
    "ConnectionPoolTracker",
    "ConnectionResilience",
    "ConnectionState",
    "HealthEvent",
    "HealthScore",
    "Readiness",
]
