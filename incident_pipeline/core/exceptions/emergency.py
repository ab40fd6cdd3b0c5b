"""
Emergency Path Exceptions
"""

from incident_pipeline.core.exceptions.base import PipelineError


class EmergencyPathFailure(PipelineError):
    """
    Inline execution AND the degraded-record write both failed.

    The single fatal condition of the pipeline: an operator has been alerted
    and the error propagates to the caller of ``process_report``.
    """
    pass
