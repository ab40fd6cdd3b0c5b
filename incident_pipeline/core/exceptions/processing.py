"""
Job Processing Exceptions

Raised by the worker pool while running handlers.
"""

from incident_pipeline.core.exceptions.base import PipelineError


class ProcessingFailure(PipelineError):
    """
    Raised when a handler throws or exceeds its time budget.

    Retried according to the tier's policy.
    """
    pass


class ExhaustedRetriesError(ProcessingFailure):
    """
    Terminal failure for a job: retries or stall allowance used up.

    Recorded in the dead-letter store and surfaced through stats. Never
    raised to the original submitter.
    """
    pass


class HandlerNotRegisteredError(ProcessingFailure):
    """Raised when no handler is registered for a tier."""
    pass
