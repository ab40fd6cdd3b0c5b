"""
Job Queue Protocol

One contract for both queue backends (Redis broker and in-process fallback).
Both order jobs with the algorithm in
``incident_pipeline.infrastructure.message_queue.ordering``.

Architectural Decision: Protocol-based abstraction
- The tiered queue manager never branches on backend type
- Tests can substitute either backend
"""

from typing import Any, Protocol, runtime_checkable

from incident_pipeline.core.config.constants import QueueBackend
from incident_pipeline.jobs.models import Job


@runtime_checkable
class JobQueue(Protocol):
    """
    Priority-then-FIFO job queue for a single tier.

    Jobs whose ``ready_at`` is in the future are held as delayed and only
    become eligible for ``pop_ready`` once due. Every mutating call is atomic
    with respect to other callers of the same backend.
    """

    name: str
    backend: QueueBackend

    async def push(self, job: Job, now_ms: int) -> None:
        """
        Store a job as waiting, or as delayed when ``job.ready_at > now_ms``.

        Raises:
            QueueFullError: fallback capacity reached
            BrokerUnavailableError: broker command failed
        """
        ...

    async def peek_score(self, now_ms: int) -> int | None:
        """Priority score of the next ready job, or None when nothing is ready."""
        ...

    async def pop_ready(self, now_ms: int) -> Job | None:
        """
        Atomically remove the next ready job and mark it Active.

        The returned job carries a fresh ``lease``; at most one caller can
        receive a given job.
        """
        ...

    async def release(self, job: Job) -> bool:
        """
        Drop the Active entry held under ``job.lease``.

        Returns:
            True if the caller still owned the job, False if it was already
            released or reclaimed by someone else.
        """
        ...

    async def active_jobs(self) -> list[Job]:
        """Snapshot of jobs currently Active (used by the stalled sweep)."""
        ...

    async def take_queued(self, limit: int) -> list[Job]:
        """Remove and return up to ``limit`` queued (waiting or delayed) jobs in order."""
        ...

    async def record_completed(self, job: Job) -> None:
        ...

    async def record_failed(self, job: Job) -> None:
        ...

    async def size(self) -> int:
        """Waiting plus delayed jobs."""
        ...

    async def stats(self) -> dict[str, Any]:
        """``{waiting, active, completed, failed, delayed}`` counts."""
        ...
