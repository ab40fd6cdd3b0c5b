"""
Tiered Queue Manager

Routes every job operation to the right backend for its tier:

- the broker-backed queue (Redis) while the connection resilience layer
  reports ready,
- the in-process fallback queue otherwise.

Callers never see the difference. ``enqueue`` succeeds whenever either
backend accepts the job; ``dequeue`` merges both heads so priority-then-FIFO
order holds across a failover. A background promoter moves fallback jobs back
to the broker once it recovers.

Every job operation after dequeue (complete, retry, stall, dead-letter) starts
by releasing the job's Active entry under its lease. Only the caller that wins
the release acts, which keeps at most one owner per job even when the timeout
path and the stalled sweep race.

STAGE-TQM: Tiered queue manager
-------------------------------
TQM.1: Enqueue
TQM.2: Dequeue
TQM.3: Complete
TQM.4: Retry
TQM.5: Stalled requeue
TQM.6: Dead-letter
TQM.7: Stalled sweep
TQM.8: Fallback promotion
TQM.9: Stats and health
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from incident_pipeline.core.config.constants import (
    DLQ_PROMOTION_REQUEUE_FAILED,
    DLQ_REQUEUE_FAILED,
    DLQ_RETRIES_EXHAUSTED,
    DLQ_STALLED_LIMIT,
    FALLBACK_PROMOTION_BATCH,
    QUEUE_FAILED_DEGRADED_THRESHOLD,
    QUEUE_WAITING_STUCK_THRESHOLD,
    QueueBackend,
    Tier,
)
from incident_pipeline.core.config.settings import TierPolicy
from incident_pipeline.core.exceptions import (
    BrokerUnavailableError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionPoolExhaustedError,
    EnqueueFailure,
    QueueFullError,
)
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.interfaces.job_queue import JobQueue
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.core.resilience.connection_resilience import ConnectionResilience
from incident_pipeline.infrastructure.message_queue.dead_letter_store import DeadLetterStore
from incident_pipeline.infrastructure.monitoring.metrics_collector import MetricsCollector
from incident_pipeline.jobs.models import (
    DeadLetterRecord,
    EnqueueResult,
    Job,
    JobOptions,
    JobStatus,
)

logger = get_logger(__name__)

T = TypeVar("T")

# The broker could not serve the call; fall back or defer
UNAVAILABLE_ERRORS = (BrokerUnavailableError, CircuitOpenError, ConnectionPoolExhaustedError)

_EMPTY_STATS = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}


def _require_every_tier(name: str, mapping: Mapping[Tier, Any]) -> None:
    missing = [tier.value for tier in Tier if tier not in mapping]
    if missing:
        raise ConfigurationError(
            f"{name} has no entry for tiers {missing}",
            details={"component": name, "missing": missing},
        )


class TieredQueueManager:
    """
    One queue per tier, transparently failing over between broker and memory.

    Usage:
        manager = TieredQueueManager(policies, resilience, fallback_queues,
                                     dead_letters, clock, broker_queues=broker_queues)
        result = await manager.enqueue(Tier.EMERGENCY, {"report_id": "r1"})
        job = await manager.dequeue(Tier.EMERGENCY)
        await manager.complete(job)
    """

    def __init__(
        self,
        policies: Mapping[Tier, TierPolicy],
        resilience: ConnectionResilience,
        fallback_queues: Mapping[Tier, JobQueue],
        dead_letters: DeadLetterStore,
        clock: Clock,
        broker_queues: Mapping[Tier, JobQueue] | None = None,
        metrics: MetricsCollector | None = None,
        ping: Callable[[], Awaitable[Any]] | None = None,
        promotion_interval_s: float = 5.0,
        promotion_batch: int = FALLBACK_PROMOTION_BATCH,
    ):
        _require_every_tier("policies", policies)
        _require_every_tier("fallback_queues", fallback_queues)
        if broker_queues is not None:
            _require_every_tier("broker_queues", broker_queues)

        self._policies = dict(policies)
        self._resilience = resilience
        self._fallback = dict(fallback_queues)
        self._broker = dict(broker_queues) if broker_queues is not None else {}
        self._dead_letters = dead_letters
        self._clock = clock
        self._metrics = metrics
        self._ping = ping
        self._promotion_interval_s = promotion_interval_s
        self._promotion_batch = promotion_batch

        self._promoter_task: asyncio.Task | None = None
        self._promoter_stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def resilience(self) -> ConnectionResilience:
        return self._resilience

    @property
    def dead_letters(self) -> DeadLetterStore:
        return self._dead_letters

    @property
    def has_broker(self) -> bool:
        return bool(self._broker)

    def policy(self, tier: Tier) -> TierPolicy:
        return self._policies[Tier(tier)]

    def queue_name(self, tier: Tier) -> str:
        return Tier(tier).queue_name

    def _queue_for(self, job: Job) -> JobQueue:
        if job.backend is QueueBackend.BROKER and job.tier in self._broker:
            return self._broker[job.tier]
        return self._fallback[job.tier]

    async def _run(self, queue: JobQueue, operation: Callable[[], Awaitable[T]], op_name: str) -> T:
        """Broker calls go through the resilience layer; memory calls run directly."""
        if queue.backend is QueueBackend.BROKER:
            return await self._resilience.call(operation, op_name=op_name)
        return await operation()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def build_job(self, tier: Tier, payload: dict[str, Any], options: JobOptions) -> Job:
        policy = self.policy(tier)
        attempts = options.attempts if options.attempts is not None else policy.attempts
        if attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {attempts}")
        delay_ms = options.delay_ms if options.delay_ms is not None else policy.delay_ms
        now = self._clock.now_ms()

        job = Job(
            tier=tier,
            payload=payload,
            priority=options.priority if options.priority is not None else policy.priority,
            created_at=now,
            ready_at=now + max(0, int(delay_ms)),
            max_retries=attempts - 1,
            retries_remaining=attempts - 1,
            metadata=dict(options.metadata),
        )
        if options.job_id:
            job.id = options.job_id
        return job

    async def enqueue(
        self,
        tier: Tier,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """
        Store a new job for ``tier``.

        STAGE-TQM.1: Enqueue

        Raises:
            EnqueueFailure: neither the broker nor the fallback queue took the job
        """
        tier = Tier(tier)
        job = self.build_job(tier, payload, JobOptions.from_mapping(options))
        now = self._clock.now_ms()

        backend = await self._push(job, now, op_name="enqueue")

        logger.info(
            "Job enqueued",
            stage="TQM.1",
            tier=tier.value,
            job_id=job.id,
            backend=backend.value,
            priority=job.priority,
            delay_ms=job.ready_at - now,
        )
        return EnqueueResult(
            job_id=job.id,
            tier=tier,
            queue_name=self.queue_name(tier),
            estimated_delay=max(0, job.ready_at - now),
            backend=backend,
        )

    async def _push(self, job: Job, now_ms: int, op_name: str) -> QueueBackend:
        """
        Broker first when the gate is open, fallback otherwise.

        Raises:
            EnqueueFailure: the fallback push failed too
        """
        broker = self._broker.get(job.tier)
        if broker is None:
            reason = "no_broker"
        else:
            readiness = self._resilience.is_ready()
            if readiness.ready:
                try:
                    await self._resilience.call(lambda: broker.push(job, now_ms), op_name=op_name)
                except UNAVAILABLE_ERRORS as e:
                    reason = type(e).__name__
                    logger.warning(
                        "Broker push failed, using fallback queue",
                        stage="TQM.1.1",
                        tier=job.tier.value,
                        job_id=job.id,
                        error=str(e),
                    )
                else:
                    if self._metrics:
                        self._metrics.record_enqueue(job.tier.value, QueueBackend.BROKER.value)
                    return QueueBackend.BROKER
            else:
                reason = readiness.reason or "not_ready"

        fallback = self._fallback[job.tier]
        try:
            await fallback.push(job, now_ms)
        except QueueFullError as e:
            if self._metrics:
                self._metrics.record_enqueue_failure(job.tier.value)
            logger.error(
                "Fallback queue rejected job",
                stage="TQM.1.ERROR",
                tier=job.tier.value,
                job_id=job.id,
                error=e.message,
            )
            raise EnqueueFailure.from_exception(
                e,
                f"Job could not be stored for tier {job.tier.value}",
                job_id=job.id,
                tier=job.tier.value,
                reason=reason,
            ) from e

        if self._metrics:
            self._metrics.record_enqueue(job.tier.value, QueueBackend.MEMORY.value)
            if broker is not None:
                self._metrics.record_fallback_enqueue(job.tier.value, reason)
        return QueueBackend.MEMORY

    # ------------------------------------------------------------------
    # Dequeue
    # ------------------------------------------------------------------

    async def dequeue(self, tier: Tier) -> Job | None:
        """
        Pop the next ready job for ``tier`` across both backends.

        STAGE-TQM.2: Dequeue

        The head with the lower score wins; the fallback wins ties. The broker
        is skipped while the readiness gate is closed.
        """
        tier = Tier(tier)
        now = self._clock.now_ms()
        fallback = self._fallback[tier]
        broker = self._broker.get(tier)

        fallback_score = await fallback.peek_score(now)

        if broker is not None and self._resilience.is_ready().ready:
            try:
                broker_score = await self._resilience.call(
                    lambda: broker.peek_score(now), op_name="peek"
                )
                if broker_score is not None and (fallback_score is None or broker_score < fallback_score):
                    job = await self._resilience.call(lambda: broker.pop_ready(now), op_name="dequeue")
                    if job is not None:
                        logger.debug("Job dequeued", stage="TQM.2", tier=tier.value, job_id=job.id, backend="broker")
                        return job
            except UNAVAILABLE_ERRORS as e:
                logger.debug("Broker dequeue skipped", stage="TQM.2.1", tier=tier.value, error_type=type(e).__name__)

        if fallback_score is None:
            return None
        job = await fallback.pop_ready(now)
        if job is not None:
            logger.debug("Job dequeued", stage="TQM.2", tier=tier.value, job_id=job.id, backend="memory")
        return job

    # ------------------------------------------------------------------
    # Job outcomes
    # ------------------------------------------------------------------

    async def _release(self, job: Job) -> bool:
        """
        Drop the caller's Active entry. False means someone else owns the job
        now, or the broker is unreachable and the stalled sweep will pick it up.
        """
        queue = self._queue_for(job)
        try:
            return await self._run(queue, lambda: queue.release(job), "release")
        except UNAVAILABLE_ERRORS as e:
            logger.warning(
                "Release failed, job left for stalled sweep",
                stage="TQM.3.1",
                tier=job.tier.value,
                job_id=job.id,
                error_type=type(e).__name__,
            )
            return False

    async def _count(self, job: Job, completed: bool) -> None:
        queue = self._queue_for(job)
        operation = (lambda: queue.record_completed(job)) if completed else (lambda: queue.record_failed(job))
        try:
            await self._run(queue, operation, "record_outcome")
        except UNAVAILABLE_ERRORS as e:
            logger.debug("Outcome counter not updated", stage="TQM.3.2", job_id=job.id, error_type=type(e).__name__)

    async def complete(self, job: Job) -> bool:
        """
        Mark an Active job Completed.

        STAGE-TQM.3: Complete

        Returns:
            False if the caller no longer held the job (it was reclaimed).
        """
        if not await self._release(job):
            logger.warning("Completed job no longer owned", stage="TQM.3", tier=job.tier.value, job_id=job.id)
            return False

        now = self._clock.now_ms()
        job.status = JobStatus.COMPLETED
        await self._count(job, completed=True)
        if self._metrics:
            started = job.started_at if job.started_at is not None else now
            self._metrics.record_job_completed(job.tier.value, max(0, now - started) / 1000.0)

        logger.info("Job completed", stage="TQM.3", tier=job.tier.value, job_id=job.id)
        return True

    async def schedule_retry(self, job: Job, error: str, delay_ms: int) -> bool:
        """
        Consume one retry and requeue the job ``delay_ms`` from now.

        STAGE-TQM.4: Retry
        """
        if job.retries_remaining <= 0:
            raise ValueError(f"Job {job.id} has no retries remaining")
        if not await self._release(job):
            return False

        now = self._clock.now_ms()
        job.retries_remaining -= 1
        job.last_error = error
        job.status = JobStatus.RETRY_SCHEDULED
        job.ready_at = now + max(0, delay_ms)
        job.lease = None
        job.started_at = None

        if self._metrics:
            self._metrics.record_job_retried(job.tier.value)
        logger.info(
            "Job retry scheduled",
            stage="TQM.4",
            tier=job.tier.value,
            job_id=job.id,
            retries_remaining=job.retries_remaining,
            delay_ms=delay_ms,
            error=error,
        )
        await self._requeue(job, now)
        return True

    async def requeue_stalled(self, job: Job, reason: str = "timeout") -> bool:
        """
        Reclaim a job that overran its processing budget.

        STAGE-TQM.5: Stalled requeue

        Stalls do not consume retries; past ``max_stalled_count`` the job is
        dead-lettered directly.
        """
        if not await self._release(job):
            return False
        await self._handle_stalled(job, reason)
        return True

    async def _handle_stalled(self, job: Job, reason: str) -> None:
        policy = self.policy(job.tier)
        job.stalled_count += 1
        if self._metrics:
            self._metrics.record_job_stalled(job.tier.value)

        if job.stalled_count > policy.max_stalled_count:
            logger.warning(
                "Job exceeded stall allowance",
                stage="TQM.5",
                tier=job.tier.value,
                job_id=job.id,
                stalled_count=job.stalled_count,
            )
            await self._write_dead_letter(
                job, job.last_error or f"stalled {job.stalled_count} times ({reason})", DLQ_STALLED_LIMIT
            )
            return

        now = self._clock.now_ms()
        job.status = JobStatus.STALLED
        job.last_error = job.last_error or f"stalled ({reason})"
        job.ready_at = now
        job.lease = None
        job.started_at = None
        logger.warning(
            "Stalled job requeued",
            stage="TQM.5",
            tier=job.tier.value,
            job_id=job.id,
            stalled_count=job.stalled_count,
            reason=reason,
        )
        await self._requeue(job, now)

    async def _requeue(self, job: Job, now_ms: int) -> None:
        try:
            await self._push(job, now_ms, op_name="requeue")
        except EnqueueFailure as e:
            await self._write_dead_letter(job, e.message, DLQ_REQUEUE_FAILED)

    async def dead_letter(self, job: Job, error: str, reason: str = DLQ_RETRIES_EXHAUSTED) -> bool:
        """
        Move an Active job to the dead-letter store.

        STAGE-TQM.6: Dead-letter
        """
        if not await self._release(job):
            return False
        await self._write_dead_letter(job, error, reason)
        return True

    async def _write_dead_letter(self, job: Job, error: str, reason: str) -> None:
        job.status = JobStatus.DEAD_LETTERED
        job.last_error = error
        record = DeadLetterRecord.from_job(job, error=error, failed_at=self._clock.now_ms(), reason=reason)
        await self._dead_letters.add(record)
        await self._count(job, completed=False)
        if self._metrics:
            self._metrics.record_dead_letter(job.tier.value, reason)
        logger.error(
            "Job dead-lettered",
            stage="TQM.6",
            tier=job.tier.value,
            job_id=job.id,
            reason=reason,
            attempts_made=record.attempts_made,
            error=error,
        )

    # ------------------------------------------------------------------
    # Stalled sweep
    # ------------------------------------------------------------------

    async def reclaim_stalled(self, tier: Tier) -> int:
        """
        Requeue Active jobs that have been running longer than the tier budget.

        STAGE-TQM.7: Stalled sweep

        Catches jobs whose worker crashed or hung. Each job is acted on by
        whichever caller wins its release.
        """
        tier = Tier(tier)
        budget_ms = int(self.policy(tier).max_processing_time_s * 1000)
        now = self._clock.now_ms()

        queues: list[JobQueue] = [self._fallback[tier]]
        broker = self._broker.get(tier)
        if broker is not None and self._resilience.is_ready().ready:
            queues.append(broker)

        reclaimed = 0
        for queue in queues:
            try:
                active = await self._run(queue, queue.active_jobs, "active_jobs")
            except UNAVAILABLE_ERRORS:
                continue
            for job in active:
                if job.started_at is None or now - job.started_at <= budget_ms:
                    continue
                if await self.requeue_stalled(job, reason="sweep"):
                    reclaimed += 1

        if reclaimed:
            logger.info("Stalled jobs reclaimed", stage="TQM.7", tier=tier.value, count=reclaimed)
        return reclaimed

    # ------------------------------------------------------------------
    # Fallback promotion
    # ------------------------------------------------------------------

    async def promote_fallback(self) -> int:
        """
        Move queued fallback jobs back to the broker.

        STAGE-TQM.8: Fallback promotion

        Best effort: stops at the first broker failure and puts the
        untransferred jobs back into the fallback queue.
        A job that no longer fits there is dead-lettered.
        """
        if not self._broker:
            return 0

        promoted = 0
        for tier in Tier:
            if not self._resilience.is_ready().ready:
                break
            fallback = self._fallback[tier]
            broker = self._broker[tier]
            jobs = await fallback.take_queued(self._promotion_batch)
            if not jobs:
                continue

            now = self._clock.now_ms()
            moved = 0
            for index, job in enumerate(jobs):
                try:
                    await self._resilience.call(lambda: broker.push(job, now), op_name="promote")
                except UNAVAILABLE_ERRORS as e:
                    for remaining in jobs[index:]:
                        await self._return_to_fallback(fallback, remaining, now)
                    logger.warning(
                        "Fallback promotion interrupted",
                        stage="TQM.8.1",
                        tier=tier.value,
                        promoted=moved,
                        returned=len(jobs) - index,
                        error_type=type(e).__name__,
                    )
                    break
                moved += 1

            if moved:
                promoted += moved
                if self._metrics:
                    self._metrics.record_fallback_promotion(tier.value, moved)
                logger.info("Fallback jobs promoted to broker", stage="TQM.8", tier=tier.value, count=moved)
            if moved < len(jobs):
                break
        return promoted

    async def _return_to_fallback(self, fallback: JobQueue, job: Job, now_ms: int) -> None:
        try:
            await fallback.push(job, now_ms)
        except QueueFullError as e:
            logger.warning(
                "Fallback full while returning promoted job", stage="TQM.8.2", tier=job.tier.value, job_id=job.id
            )
            await self._write_dead_letter(job, e.message, DLQ_PROMOTION_REQUEUE_FAILED)

    async def run_promotion_cycle(self) -> int:
        """
        One promoter tick: probe while the gate is closed, otherwise flush
        buffered dead letters and promote fallback jobs.
        """
        if not self._resilience.is_ready().ready:
            if self._ping is not None:
                await self._resilience.probe(self._ping)
            return 0
        await self._dead_letters.flush()
        return await self.promote_fallback()

    async def _promoter_loop(self) -> None:
        logger.info("Fallback promoter started", stage="TQM.8", interval_s=self._promotion_interval_s)
        while not self._promoter_stop.is_set():
            try:
                await self._clock.sleep(self._promotion_interval_s)
                if self._promoter_stop.is_set():
                    break
                await self.run_promotion_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Fallback promoter error",
                    stage="TQM.8.ERROR",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
        logger.info("Fallback promoter stopped", stage="TQM.8")

    def start_promoter(self) -> None:
        if not self._broker or (self._promoter_task and not self._promoter_task.done()):
            return
        self._promoter_stop.clear()
        self._promoter_task = asyncio.create_task(self._promoter_loop(), name="fallback-promoter")

    async def stop_promoter(self) -> None:
        self._promoter_stop.set()
        task, self._promoter_task = self._promoter_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    async def get_queue_stats(self) -> dict[str, dict[str, Any]]:
        """
        Per-tier ``{waiting, active, completed, failed, delayed}`` across both
        backends, plus ``fallback_size`` and ``broker_available``.

        STAGE-TQM.9: Stats
        """
        broker_ready = self._resilience.is_ready().ready
        stats: dict[str, dict[str, Any]] = {}

        for tier in Tier:
            fallback_stats = await self._fallback[tier].stats()
            combined = {key: fallback_stats.get(key, 0) for key in _EMPTY_STATS}
            broker_available = False

            broker = self._broker.get(tier)
            if broker is not None and broker_ready:
                try:
                    broker_stats = await self._resilience.call(broker.stats, op_name="stats")
                except UNAVAILABLE_ERRORS:
                    broker_stats = None
                if broker_stats is not None:
                    broker_available = True
                    for key in _EMPTY_STATS:
                        combined[key] += broker_stats.get(key, 0)
                    if self._metrics:
                        self._metrics.record_queue_depth(
                            tier.value, "broker", broker_stats.get("waiting", 0) + broker_stats.get("delayed", 0)
                        )

            fallback_size = fallback_stats.get("waiting", 0) + fallback_stats.get("delayed", 0)
            if self._metrics:
                self._metrics.record_queue_depth(tier.value, "memory", fallback_size)

            stats[tier.value] = {
                **combined,
                "fallback_size": fallback_size,
                "broker_available": broker_available,
            }
        return stats

    async def health_check(self) -> dict[str, Any]:
        """
        Queue health summary.

        A tier is ``degraded`` when it has accumulated more than 100 failures
        or has more than 50 waiting jobs and nothing active. Overall status is
        ``critical`` when half or more tiers are degraded, ``degraded`` when
        any tier is or the broker gate is closed, else ``healthy``.
        """
        stats = await self.get_queue_stats()
        tiers: dict[str, dict[str, Any]] = {}
        unhealthy = 0

        for name, tier_stats in stats.items():
            issues = []
            if tier_stats["failed"] > QUEUE_FAILED_DEGRADED_THRESHOLD:
                issues.append("high_failure_count")
            if tier_stats["waiting"] > QUEUE_WAITING_STUCK_THRESHOLD and tier_stats["active"] == 0:
                issues.append("queue_stuck")
            if issues:
                unhealthy += 1
            tiers[name] = {"status": "degraded" if issues else "healthy", "issues": issues, **tier_stats}

        readiness = self._resilience.is_ready()
        if unhealthy * 2 >= len(tiers) and unhealthy > 0:
            overall = "critical"
        elif unhealthy or (self.has_broker and not readiness.ready):
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "status": overall,
            "unhealthy_tiers": unhealthy,
            "broker_ready": readiness.ready,
            "broker_reason": readiness.reason,
            "dead_letter_buffered": self._dead_letters.buffered,
            "tiers": tiers,
        }
