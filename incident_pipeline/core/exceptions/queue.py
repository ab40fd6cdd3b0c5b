"""
Message Queue Exceptions

All exceptions related to job queue operations (broker and fallback).
"""

from incident_pipeline.core.exceptions.base import PipelineError


class QueueError(PipelineError):
    """Base exception for job queue errors."""
    pass


class BrokerUnavailableError(QueueError):
    """
    Raised when a broker command fails (connection refused, timeout, ...).

    Counted as a failure by the circuit breaker.
    """
    pass


class QueueFullError(QueueError):
    """
    Raised when the fallback queue is at capacity.

    The fallback queue is bounded so an extended broker outage cannot
    exhaust process memory.
    """
    pass


class EnqueueFailure(QueueError):
    """
    Raised when a job could not be stored on any backend.

    Only raised after the fallback push itself failed. For Emergency jobs
    the caller switches to the direct path; other tiers log and fail soft.
    """
    pass
