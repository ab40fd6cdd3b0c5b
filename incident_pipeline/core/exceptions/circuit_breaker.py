"""
Circuit Breaker Exceptions

All exceptions related to the connection resilience layer.
"""

from incident_pipeline.core.exceptions.base import PipelineError


class CircuitBreakerError(PipelineError):
    """Base exception for circuit breaker errors."""
    pass


class CircuitOpenError(CircuitBreakerError):
    """
    Raised when the circuit is open (fail fast).

    The guarded operation was NOT attempted. Callers should back off or
    use an alternative path (fallback queue, direct execution).
    """
    pass

