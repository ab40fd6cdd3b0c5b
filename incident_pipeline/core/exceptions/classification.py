"""
Classification Exceptions

Raised while extracting fields from a raw incident event. The classifier
absorbs these and falls back to the safe default tier.
"""

from incident_pipeline.core.exceptions.base import PipelineError


class ClassificationError(PipelineError):
    """
    Raised when an event field is malformed or has the wrong type.

    Non-fatal: the classifier records a ``malformed-input`` reason and keeps
    evaluating the remaining rules.
    """
    pass
