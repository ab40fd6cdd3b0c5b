"""
Job queue backends: Redis broker and in-process fallback, sharing one
ordering algorithm, plus the dead-letter store.
"""

from incident_pipeline.infrastructure.message_queue.dead_letter_store import DeadLetterStore
from incident_pipeline.infrastructure.message_queue.memory_queue import InMemoryJobQueue
from incident_pipeline.infrastructure.message_queue.ordering import (
    job_score,
    priority_score,
)
from incident_pipeline.infrastructure.message_queue.redis_queue import RedisJobQueue

__all__ = ["DeadLetterStore", "InMemoryJobQueue", "RedisJobQueue", "job_score", "priority_score"]
