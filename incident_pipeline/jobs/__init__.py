"""Job records shared by the queue manager, queue backends and workers."""

from incident_pipeline.jobs.models import (
    DeadLetterRecord,
    EnqueueResult,
    Job,
    JobOptions,
    JobStatus,
)

__all__ = ["DeadLetterRecord", "EnqueueResult", "Job", "JobOptions", "JobStatus"]
