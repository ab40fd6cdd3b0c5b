"""
Job Data Models

Job, DeadLetterRecord and EnqueueResult: the records that flow between the
queue manager, the queue backends and the worker pools.

Serialization uses orjson; the broker stores jobs as JSON strings.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson

from incident_pipeline.core.config.constants import QueueBackend, Tier


class JobStatus(str, Enum):
    """Job lifecycle states."""

    CREATED = "created"
    QUEUED = "queued"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    STALLED = "stalled"
    DEAD_LETTERED = "dead_lettered"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD_LETTERED})


@dataclass
class Job:
    """
    A unit of work bound to exactly one tier.

    Times are epoch milliseconds. ``retries_remaining`` only ever decreases.
    ``lease`` identifies the current holder while the job is Active; it is
    regenerated on every dequeue so a stale holder cannot release a job that
    has since been reclaimed and handed to another worker.
    """

    tier: Tier
    payload: dict[str, Any]
    priority: int
    created_at: int
    ready_at: int
    max_retries: int
    retries_remaining: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.CREATED
    backend: QueueBackend | None = None
    last_error: str | None = None
    stalled_count: int = 0
    executions: int = 0
    started_at: int | None = None
    lease: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.tier = Tier(self.tier)
        self.status = JobStatus(self.status)
        if self.backend is not None:
            self.backend = QueueBackend(self.backend)

    @property
    def attempts_made(self) -> int:
        """Retries consumed so far."""
        return self.max_retries - self.retries_remaining

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier.value,
            "payload": self.payload,
            "priority": self.priority,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "max_retries": self.max_retries,
            "retries_remaining": self.retries_remaining,
            "status": self.status.value,
            "backend": self.backend.value if self.backend else None,
            "last_error": self.last_error,
            "stalled_count": self.stalled_count,
            "executions": self.executions,
            "started_at": self.started_at,
            "lease": self.lease,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            tier=Tier(data["tier"]),
            payload=data.get("payload") or {},
            priority=int(data["priority"]),
            created_at=int(data["created_at"]),
            ready_at=int(data["ready_at"]),
            max_retries=int(data["max_retries"]),
            retries_remaining=int(data["retries_remaining"]),
            status=JobStatus(data.get("status", JobStatus.CREATED.value)),
            backend=data.get("backend"),
            last_error=data.get("last_error"),
            stalled_count=int(data.get("stalled_count", 0)),
            executions=int(data.get("executions", 0)),
            started_at=data.get("started_at"),
            lease=data.get("lease"),
            metadata=data.get("metadata") or {},
        )

    def to_json(self) -> str:
        return orjson.dumps(self.to_dict()).decode("utf-8")

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Job":
        return cls.from_dict(orjson.loads(raw))


@dataclass(frozen=True)
class DeadLetterRecord:
    """Terminal record of a job that exhausted its retries or stall allowance."""

    job_id: str
    tier: Tier
    payload: dict[str, Any]
    error: str
    failed_at: int
    attempts_made: int
    reason: str = "retries_exhausted"

    @classmethod
    def from_job(cls, job: Job, error: str, failed_at: int, reason: str) -> "DeadLetterRecord":
        return cls(
            job_id=job.id,
            tier=job.tier,
            payload=job.payload,
            error=error,
            failed_at=failed_at,
            attempts_made=job.attempts_made,
            reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "tier": self.tier.value,
            "payload": self.payload,
            "error": self.error,
            "failed_at": self.failed_at,
            "attempts_made": self.attempts_made,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeadLetterRecord":
        return cls(
            job_id=data["job_id"],
            tier=Tier(data["tier"]),
            payload=data.get("payload") or {},
            error=data["error"],
            failed_at=int(data["failed_at"]),
            attempts_made=int(data["attempts_made"]),
            reason=data.get("reason", "retries_exhausted"),
        )

    def to_json(self) -> str:
        return orjson.dumps(self.to_dict()).decode("utf-8")

    @classmethod
    def from_json(cls, raw: str | bytes) -> "DeadLetterRecord":
        return cls.from_dict(orjson.loads(raw))


@dataclass(frozen=True)
class EnqueueResult:
    """What ``enqueue`` hands back to the caller."""

    job_id: str
    tier: Tier
    queue_name: str
    estimated_delay: int
    backend: QueueBackend

    @property
    def fallback(self) -> bool:
        return self.backend is QueueBackend.MEMORY

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "tier": self.tier.value,
            "queue_name": self.queue_name,
            "estimated_delay": self.estimated_delay,
            "backend": self.backend.value,
            "fallback": self.fallback,
        }


@dataclass(frozen=True)
class JobOptions:
    """
    Per-call overrides for ``enqueue``. ``None`` means "use the tier default".

    ``delay_ms`` postpones eligibility; ``attempts`` is the total number of
    executions; ``job_id`` pins the id (used to link a report and its jobs).
    """

    priority: int | None = None
    delay_ms: int | None = None
    attempts: int | None = None
    job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: "dict[str, Any] | JobOptions | None") -> "JobOptions":
        """Accept an options object, a plain dict (``delay`` or ``delay_ms``), or None."""
        if data is None:
            return cls()
        if isinstance(data, JobOptions):
            return data
        delay = data.get("delay_ms", data.get("delay"))
        return cls(
            priority=data.get("priority"),
            delay_ms=delay,
            attempts=data.get("attempts"),
            job_id=data.get("job_id", data.get("jobId")),
            metadata=dict(data.get("metadata") or {}),
        )
