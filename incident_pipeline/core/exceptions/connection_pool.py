"""
Connection Pool Exceptions

Raised by the in-process connection slot tracker.
"""

from incident_pipeline.core.exceptions.base import PipelineError


class ConnectionPoolError(PipelineError):
    """Base exception for connection pool errors."""
    pass


class ConnectionPoolExhaustedError(ConnectionPoolError):
    """Raised when every tracked broker connection slot is in use."""

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(
            message or "Connection pool exhausted - broker at capacity",
            details=details,
        )
