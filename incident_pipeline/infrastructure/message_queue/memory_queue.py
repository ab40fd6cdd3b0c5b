"""
In-Memory Job Queue (Fallback)

Process-local implementation of the JobQueue contract, used transparently
while the broker is unreachable. Ordering comes from the shared ordering
module, so a sequence of pushes and pops behaves exactly as it does against
the broker.

Non-durable: contents are lost when the process exits.

STAGE-Q (memory): Q.M1 push, Q.M2 pop, Q.M3 release
"""

import heapq
import itertools
import uuid
from dataclasses import replace
from typing import Any

from incident_pipeline.core.config.constants import QueueBackend, Tier
from incident_pipeline.core.exceptions import QueueFullError
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.infrastructure.message_queue.ordering import is_due, job_score
from incident_pipeline.jobs.models import Job, JobStatus

logger = get_logger(__name__)


class InMemoryJobQueue:
    """
    Heap-backed priority queue for one tier.

    Waiting heap entries are ``(score, seq, job_id)``; delayed heap entries
    are ``(ready_at, seq, job_id)``. No method awaits while mutating, so every
    operation is atomic on the event loop.
    """

    backend = QueueBackend.MEMORY

    def __init__(self, tier: Tier, max_size: int | None = None):
        self.tier = tier
        self.name = tier.queue_name
        self._max_size = max_size

        self._seq = itertools.count()
        self._waiting: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[int, int, str]] = []
        self._jobs: dict[str, Job] = {}
        self._active: dict[tuple[str, str], Job] = {}
        self._completed = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def push(self, job: Job, now_ms: int) -> None:
        if self._max_size is not None and len(self._jobs) >= self._max_size:
            raise QueueFullError(
                f"Fallback queue '{self.name}' is full",
                job_id=job.id,
                details={"tier": self.tier.value, "max_size": self._max_size},
            )

        stored = replace(job, backend=QueueBackend.MEMORY, lease=None, started_at=None)
        seq = next(self._seq)
        self._jobs[stored.id] = stored

        if not is_due(stored, now_ms):
            stored.status = JobStatus.DELAYED
            heapq.heappush(self._delayed, (stored.ready_at, seq, stored.id))
        else:
            stored.status = JobStatus.QUEUED
            heapq.heappush(self._waiting, (job_score(stored), seq, stored.id))

        job.backend = QueueBackend.MEMORY
        job.status = stored.status

        logger.debug(
            "Job pushed to fallback queue",
            stage="Q.M1",
            queue=self.name,
            job_id=stored.id,
            status=stored.status.value,
            depth=len(self._jobs),
        )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _promote_due(self, now_ms: int) -> None:
        while self._delayed and self._delayed[0][0] <= now_ms:
            _, seq, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None:
                continue
            job.status = JobStatus.QUEUED
            heapq.heappush(self._waiting, (job_score(job), seq, job_id))

    async def peek_score(self, now_ms: int) -> int | None:
        self._promote_due(now_ms)
        if not self._waiting:
            return None
        return self._waiting[0][0]

    async def pop_ready(self, now_ms: int) -> Job | None:
        self._promote_due(now_ms)
        while self._waiting:
            _, _, job_id = heapq.heappop(self._waiting)
            job = self._jobs.pop(job_id, None)
            if job is None:
                continue

            job.status = JobStatus.ACTIVE
            job.started_at = now_ms
            job.lease = uuid.uuid4().hex
            self._active[(job.id, job.lease)] = job

            logger.debug("Job popped from fallback queue", stage="Q.M2", queue=self.name, job_id=job.id)
            return job
        return None

    async def release(self, job: Job) -> bool:
        if job.lease is None:
            return False
        released = self._active.pop((job.id, job.lease), None) is not None
        logger.debug(
            "Fallback job released",
            stage="Q.M3",
            queue=self.name,
            job_id=job.id,
            owned=released,
        )
        return released

    async def active_jobs(self) -> list[Job]:
        return list(self._active.values())

    async def take_queued(self, limit: int) -> list[Job]:
        entries = sorted(
            [(score, seq, job_id) for score, seq, job_id in self._waiting]
            + [(job_score(self._jobs[job_id]), seq, job_id)
               for _, seq, job_id in self._delayed if job_id in self._jobs]
        )
        taken_ids = [job_id for _, _, job_id in entries[:limit] if job_id in self._jobs]
        if not taken_ids:
            return []

        taken_set = set(taken_ids)
        self._waiting = [entry for entry in self._waiting if entry[2] not in taken_set]
        self._delayed = [entry for entry in self._delayed if entry[2] not in taken_set]
        heapq.heapify(self._waiting)
        heapq.heapify(self._delayed)
        return [self._jobs.pop(job_id) for job_id in taken_ids]

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def record_completed(self, job: Job) -> None:
        self._completed += 1

    async def record_failed(self, job: Job) -> None:
        self._failed += 1

    async def size(self) -> int:
        return len(self._jobs)

    async def stats(self) -> dict[str, Any]:
        delayed = sum(1 for _, _, job_id in self._delayed if job_id in self._jobs)
        return {
            "waiting": len(self._jobs) - delayed,
            "active": len(self._active),
            "completed": self._completed,
            "failed": self._failed,
            "delayed": delayed,
        }
