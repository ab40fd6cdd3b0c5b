"""
Redis Job Queue (Broker)

Broker-backed implementation of the JobQueue contract for one tier.

Key layout (``<prefix>:<queue>:...``):
    waiting    ZSET  member=<seq>:<job_id>  score=priority*K + ready_at
    delayed    ZSET  member=<seq>:<job_id>  score=ready_at
    jobs       HASH  job_id -> job JSON (waiting and delayed jobs)
    active     HASH  <job_id>:<lease> -> job JSON
    seq        STRING insertion counter
    completed  STRING counter
    failed     STRING counter

At-most-one dequeue relies on ZPOPMIN; releasing and reclaiming rely on
HDEL of the lease-qualified active field, so only the current holder (or the
one sweeper that wins the HDEL) can act on an Active job.

Commands raise redis errors directly. Callers route every call through the
connection resilience layer, which converts them to BrokerUnavailableError.

STAGE-Q (broker): Q.R1 push, Q.R2 promote, Q.R3 pop, Q.R4 release
"""

import uuid
from dataclasses import replace
from typing import Any

from redis import asyncio as redis

from incident_pipeline.core.config.constants import QueueBackend, Tier
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.infrastructure.message_queue.ordering import (
    decode_member,
    encode_member,
    is_due,
    job_score,
)
from incident_pipeline.jobs.models import Job, JobStatus

logger = get_logger(__name__)


class RedisJobQueue:
    """
    Sorted-set priority queue for one tier.

    Usage:
        queue = RedisJobQueue(Tier.EMERGENCY, redis_client, prefix="incidents")
        await queue.push(job, now_ms)
        job = await queue.pop_ready(now_ms)
    """

    backend = QueueBackend.BROKER

    def __init__(self, tier: Tier, client: redis.Redis, prefix: str = "incidents"):
        self.tier = tier
        self.name = tier.queue_name
        self._redis = client

        base = f"{prefix}:{self.name}"
        self._waiting_key = f"{base}:waiting"
        self._delayed_key = f"{base}:delayed"
        self._jobs_key = f"{base}:jobs"
        self._active_key = f"{base}:active"
        self._seq_key = f"{base}:seq"
        self._completed_key = f"{base}:completed"
        self._failed_key = f"{base}:failed"

    @staticmethod
    def _active_field(job: Job) -> str:
        return f"{job.id}:{job.lease}"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def push(self, job: Job, now_ms: int) -> None:
        """STAGE-Q.R1: Push"""
        seq = await self._redis.incr(self._seq_key)
        member = encode_member(int(seq), job.id)

        due = is_due(job, now_ms)
        stored = replace(
            job,
            backend=QueueBackend.BROKER,
            status=JobStatus.QUEUED if due else JobStatus.DELAYED,
            lease=None,
            started_at=None,
        )

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._jobs_key, stored.id, stored.to_json())
            if due:
                pipe.zadd(self._waiting_key, {member: job_score(stored)})
            else:
                pipe.zadd(self._delayed_key, {member: stored.ready_at})
            await pipe.execute()

        job.backend = QueueBackend.BROKER
        job.status = stored.status

        logger.debug(
            "Job pushed to broker queue",
            stage="Q.R1",
            queue=self.name,
            job_id=job.id,
            status=stored.status.value,
        )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def _promote_due(self, now_ms: int) -> None:
        """
        Move due delayed members into the waiting set.

        STAGE-Q.R2: Promote. ZREM decides which caller moves a member, and
        the member keeps its sequence so FIFO order survives the move.
        """
        members = await self._redis.zrangebyscore(self._delayed_key, "-inf", now_ms)
        for member in members:
            if not await self._redis.zrem(self._delayed_key, member):
                continue
            _, job_id = decode_member(member)
            raw = await self._redis.hget(self._jobs_key, job_id)
            if raw is None:
                continue
            job = Job.from_json(raw)
            await self._redis.zadd(self._waiting_key, {member: job_score(job)})

    async def peek_score(self, now_ms: int) -> int | None:
        await self._promote_due(now_ms)
        head = await self._redis.zrange(self._waiting_key, 0, 0, withscores=True)
        if not head:
            return None
        _, score = head[0]
        return int(score)

    async def pop_ready(self, now_ms: int) -> Job | None:
        """STAGE-Q.R3: Pop"""
        await self._promote_due(now_ms)

        while True:
            popped = await self._redis.zpopmin(self._waiting_key, 1)
            if not popped:
                return None

            member, _ = popped[0]
            _, job_id = decode_member(member)
            raw = await self._redis.hget(self._jobs_key, job_id)
            if raw is None:
                continue

            job = Job.from_json(raw)
            job.status = JobStatus.ACTIVE
            job.started_at = now_ms
            job.lease = uuid.uuid4().hex
            job.backend = QueueBackend.BROKER

            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._active_key, self._active_field(job), job.to_json())
                pipe.hdel(self._jobs_key, job_id)
                await pipe.execute()

            logger.debug("Job popped from broker queue", stage="Q.R3", queue=self.name, job_id=job_id)
            return job

    async def release(self, job: Job) -> bool:
        """STAGE-Q.R4: Release"""
        if job.lease is None:
            return False
        removed = await self._redis.hdel(self._active_key, self._active_field(job))
        return bool(removed)

    async def active_jobs(self) -> list[Job]:
        entries = await self._redis.hgetall(self._active_key)
        return [Job.from_json(raw) for raw in entries.values()]

    async def take_queued(self, limit: int) -> list[Job]:
        members = [member for member, _ in await self._redis.zpopmin(self._waiting_key, limit)]
        remaining = limit - len(members)
        if remaining > 0:
            delayed = await self._redis.zrange(self._delayed_key, 0, remaining - 1)
            for member in delayed:
                if await self._redis.zrem(self._delayed_key, member):
                    members.append(member)

        taken = []
        for member in members:
            _, job_id = decode_member(member)
            raw = await self._redis.hget(self._jobs_key, job_id)
            if raw is None:
                continue
            await self._redis.hdel(self._jobs_key, job_id)
            taken.append(Job.from_json(raw))
        return taken

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def record_completed(self, job: Job) -> None:
        await self._redis.incr(self._completed_key)

    async def record_failed(self, job: Job) -> None:
        await self._redis.incr(self._failed_key)

    async def size(self) -> int:
        return int(await self._redis.hlen(self._jobs_key))

    async def stats(self) -> dict[str, Any]:
        waiting = await self._redis.zcard(self._waiting_key)
        delayed = await self._redis.zcard(self._delayed_key)
        active = await self._redis.hlen(self._active_key)
        completed = await self._redis.get(self._completed_key)
        failed = await self._redis.get(self._failed_key)
        return {
            "waiting": int(waiting),
            "active": int(active),
            "completed": int(completed or 0),
            "failed": int(failed or 0),
            "delayed": int(delayed),
        }
