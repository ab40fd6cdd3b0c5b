"""Application services: queue management, workers, emergency path, intake."""

from incident_pipeline.application.services.emergency_path import DirectPathOutcome, EmergencyDirectPath
from incident_pipeline.application.services.report_intake import (
    ProcessingResult,
    ProcessingStats,
    ReportIntake,
)
from incident_pipeline.application.services.retry_policy import RetryDecision, RetryPolicy
from incident_pipeline.application.services.tiered_queue_manager import TieredQueueManager
from incident_pipeline.application.services.worker_pool import (
    TierWorkerPool,
    WorkerConfig,
    WorkerPoolDispatcher,
)

__all__ = [
    "DirectPathOutcome",
    "EmergencyDirectPath",
    "ProcessingResult",
    "ProcessingStats",
    "ReportIntake",
    "RetryDecision",
    "RetryPolicy",
    "TieredQueueManager",
    "TierWorkerPool",
    "WorkerConfig",
    "WorkerPoolDispatcher",
]
