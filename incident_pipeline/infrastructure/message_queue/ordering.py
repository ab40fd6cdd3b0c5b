"""
Job Ordering

The one ordering algorithm shared by every queue backend:

- A job's priority score is ``priority * K + ready_at`` (epoch ms, K = 10^13),
  so any lower priority value beats any higher one regardless of time.
- Equal scores are served in insertion order via a monotonically increasing
  sequence number.
- Only jobs whose ``ready_at`` has passed are eligible; not-yet-due jobs sit
  in a separate delayed set keyed by ``ready_at`` and are moved into the
  waiting set when due.

The broker encodes the sequence into the sorted-set member
(``<seq:020d>:<job_id>``) so Redis' lexicographic tie-break on equal scores
reproduces the same FIFO order as the in-memory heap.
"""

from incident_pipeline.core.config.constants import PRIORITY_SCORE_MULTIPLIER
from incident_pipeline.jobs.models import Job

_SEQ_WIDTH = 20


def priority_score(priority: int, ready_at_ms: int) -> int:
    return priority * PRIORITY_SCORE_MULTIPLIER + ready_at_ms


def job_score(job: Job) -> int:
    return priority_score(job.priority, job.ready_at)


def is_due(job: Job, now_ms: int) -> bool:
    return job.ready_at <= now_ms


def encode_member(seq: int, job_id: str) -> str:
    """Sorted-set member whose lexicographic order equals insertion order."""
    return f"{seq:0{_SEQ_WIDTH}d}:{job_id}"


def decode_member(member: str) -> tuple[int, str]:
    seq, _, job_id = member.partition(":")
    return int(seq), job_id
