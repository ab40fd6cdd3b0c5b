"""Interfaces (Protocols) the pipeline depends on."""

from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.interfaces.collaborators import Notifier, OperatorChannel, Persistence
from incident_pipeline.core.interfaces.job_queue import JobQueue

__all__ = ["Clock", "JobQueue", "Notifier", "OperatorChannel", "Persistence"]
