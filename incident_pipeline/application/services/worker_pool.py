"""
Worker Pool Dispatcher

Per-tier pools of asyncio workers that pull jobs from the tiered queue
manager and run the tier's registered handler.

Architecture:
    WorkerPoolDispatcher (Public API: register_handler, start, stop)
        └── TierWorkerPool (one per tier with a handler)
              ├── worker loops x concurrency (dequeue -> run -> outcome)
              └── stalled sweep loop (reclaims Active jobs past budget)

Flow per job:
    1. Dequeue the next ready job (priority then FIFO)
    2. Run the handler under the tier's max processing time
    3. Success -> complete
    4. Exception -> retry with backoff, or dead-letter when retries are used up
    5. Budget overrun -> stalled requeue (dead-letter past the stall allowance).
       A TimeoutError raised by the handler itself is an ordinary failure.

Handlers must be idempotent: a timeout does not roll back side effects, and a
reclaimed job can run again.

STAGE-WP: Worker pool
---------------------
WP.1: Pool lifecycle
WP.2: Job execution
WP.3: Failure handling
WP.4: Stalled sweep
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from incident_pipeline.application.services.retry_policy import RetryPolicy
from incident_pipeline.application.services.tiered_queue_manager import TieredQueueManager
from incident_pipeline.core.config.constants import DLQ_RETRIES_EXHAUSTED, Tier
from incident_pipeline.core.config.settings import TierPolicy
from incident_pipeline.core.exceptions import (
    ExhaustedRetriesError,
    HandlerNotRegisteredError,
    ProcessingFailure,
)
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.logging.logger import clear_job_id, get_logger, set_job_id
from incident_pipeline.core.resilience.connection_resilience import ConnectionResilience
from incident_pipeline.jobs.models import Job

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


async def run_within_budget(work: Awaitable[Any], budget_s: float) -> bool:
    """
    Run ``work`` for at most ``budget_s`` seconds.

    Returns:
        True when the work finished, False when the budget expired and the
        work was cancelled. Exceptions raised by the work itself, a
        ``TimeoutError`` included, propagate unchanged.
    """
    task = asyncio.ensure_future(work)
    try:
        done, _ = await asyncio.wait({task}, timeout=budget_s)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if not done:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False
    task.result()
    return True


@dataclass
class WorkerConfig:
    """
    Loop timing shared by every pool.

    Attributes:
        poll_interval_s: Sleep when the queue is empty
        error_backoff_s: Sleep after an unexpected loop error
        gate_backoff_s: Sleep when the queue is empty and the readiness gate is closed
        shutdown_timeout_s: How long stop() waits for in-flight jobs
    """

    poll_interval_s: float = 0.5
    error_backoff_s: float = 1.0
    gate_backoff_s: float = 1.0
    shutdown_timeout_s: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "WorkerConfig":
        workers = settings.workers
        return cls(
            poll_interval_s=workers.WORKER_POLL_INTERVAL_S,
            error_backoff_s=workers.WORKER_ERROR_BACKOFF_S,
            gate_backoff_s=workers.WORKER_GATE_BACKOFF_S,
            shutdown_timeout_s=workers.SHUTDOWN_TIMEOUT_S,
        )


@dataclass
class PoolCounters:
    processed: int = 0
    completed: int = 0
    retried: int = 0
    stalled: int = 0
    dead_lettered: int = 0


class TierWorkerPool:
    """
    Workers for a single tier.

    ``run_once`` processes at most one job and is what the worker loops call;
    tests drive it directly for deterministic execution.
    """

    def __init__(
        self,
        tier: Tier,
        handler: JobHandler,
        policy: TierPolicy,
        manager: TieredQueueManager,
        resilience: ConnectionResilience,
        clock: Clock,
        retry_policy: RetryPolicy,
        config: WorkerConfig,
    ):
        self.tier = tier
        self._handler = handler
        self._policy = policy
        self._manager = manager
        self._resilience = resilience
        self._clock = clock
        self._retry_policy = retry_policy
        self._config = config

        self.counters = PoolCounters()
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._sweep_task: asyncio.Task | None = None
        self._busy = 0

    @property
    def concurrency(self) -> int:
        return self._policy.concurrency

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def run_once(self) -> bool:
        """
        Dequeue and process one job.

        Returns:
            True if a job was processed, False if none was ready.
        """
        job = await self._manager.dequeue(self.tier)
        if job is None:
            return False

        self._busy += 1
        try:
            await self._process(job)
        finally:
            self._busy -= 1
        return True

    async def _process(self, job: Job) -> None:
        """STAGE-WP.2: Job execution"""
        set_job_id(job.id)
        job.executions += 1
        self.counters.processed += 1
        logger.debug(
            "Running job",
            stage="WP.2",
            tier=self.tier.value,
            execution=job.executions,
            retries_remaining=job.retries_remaining,
        )
        try:
            try:
                finished = await run_within_budget(self._handler(job), self._policy.max_processing_time_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._handle_failure(job, e)
                return

            if not finished:
                logger.warning(
                    "Job exceeded processing budget",
                    stage="WP.2.1",
                    tier=self.tier.value,
                    budget_s=self._policy.max_processing_time_s,
                )
                if await self._manager.requeue_stalled(job, reason="timeout"):
                    self.counters.stalled += 1
                return

            if await self._manager.complete(job):
                self.counters.completed += 1
        finally:
            clear_job_id()

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        """
        STAGE-WP.3: Failure handling

        Retry while retries remain; otherwise dead-letter.
        """
        failure = ProcessingFailure.from_exception(error, job_id=job.id, tier=self.tier.value)
        message = f"{type(error).__name__}: {error}"
        decision = self._retry_policy.decide(job, self._policy)

        if decision.retry:
            logger.warning(
                "Handler failed, retrying",
                stage="WP.3",
                delay_ms=decision.delay_ms,
                **failure.to_dict(),
            )
            if await self._manager.schedule_retry(job, message, decision.delay_ms):
                self.counters.retried += 1
            return

        exhausted = ExhaustedRetriesError(
            f"Job exhausted {job.max_retries} retries",
            job_id=job.id,
            details={"tier": self.tier.value, "last_error": message},
        )
        logger.error("Handler failed, retries exhausted", stage="WP.3", **exhausted.to_dict())
        if await self._manager.dead_letter(job, message, DLQ_RETRIES_EXHAUSTED):
            self.counters.dead_lettered += 1

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _worker_loop(self, index: int) -> None:
        worker = f"{self.tier.queue_name}-{index}"
        while self._running:
            try:
                if await self.run_once():
                    continue
                # Idle: wait longer while the broker gate is closed
                if self._resilience.is_ready().ready:
                    await self._clock.sleep(self._config.poll_interval_s)
                else:
                    await self._clock.sleep(self._config.gate_backoff_s)
            except asyncio.CancelledError:
                logger.info("Worker cancelled", stage="WP.1", worker=worker)
                raise
            except Exception as e:
                logger.error(
                    "Worker loop error, backing off",
                    stage="WP.1.ERROR",
                    worker=worker,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                await self._clock.sleep(self._config.error_backoff_s)

    async def _sweep_loop(self) -> None:
        """STAGE-WP.4: Stalled sweep"""
        while self._running:
            try:
                await self._clock.sleep(self._policy.stalled_interval_s)
                if not self._running:
                    break
                reclaimed = await self._manager.reclaim_stalled(self.tier)
                self.counters.stalled += reclaimed
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Stalled sweep error",
                    stage="WP.4.ERROR",
                    tier=self.tier.value,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def start(self) -> None:
        """STAGE-WP.1: Pool lifecycle"""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"worker-{self.tier.queue_name}-{i}")
            for i in range(self._policy.concurrency)
        ]
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name=f"sweep-{self.tier.queue_name}")
        logger.info("Worker pool started", stage="WP.1", tier=self.tier.value, concurrency=self._policy.concurrency)

    def request_stop(self) -> None:
        """Workers exit after their current job; the sweep is cancelled right away."""
        self._running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def clear_tasks(self) -> None:
        self._tasks = []

    def get_stats(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "concurrency": self._policy.concurrency,
            "running": self._running,
            "busy": self._busy,
            "processed": self.counters.processed,
            "completed": self.counters.completed,
            "retried": self.counters.retried,
            "stalled": self.counters.stalled,
            "dead_lettered": self.counters.dead_lettered,
        }


class WorkerPoolDispatcher:
    """
    Owns one TierWorkerPool per tier that has a registered handler.

    Usage:
        dispatcher = WorkerPoolDispatcher(manager, policies, resilience, clock)
        dispatcher.register_handler(Tier.EMERGENCY, handle_emergency)
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        manager: TieredQueueManager,
        policies: Mapping[Tier, TierPolicy],
        resilience: ConnectionResilience,
        clock: Clock,
        retry_policy: RetryPolicy | None = None,
        config: WorkerConfig | None = None,
    ):
        self._manager = manager
        self._policies = dict(policies)
        self._resilience = resilience
        self._clock = clock
        self._retry_policy = retry_policy or RetryPolicy()
        self._config = config or WorkerConfig()
        self._handlers: dict[Tier, JobHandler] = {}
        self._pools: dict[Tier, TierWorkerPool] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(self, tier: Tier, handler: JobHandler) -> None:
        """Register (or replace) the handler for a tier. Takes effect for pools started afterwards."""
        tier = Tier(tier)
        self._handlers[tier] = handler
        self._pools.pop(tier, None)
        logger.info("Handler registered", stage="WP.1", tier=tier.value, handler=getattr(handler, "__name__", repr(handler)))

    def handler_for(self, tier: Tier) -> JobHandler:
        tier = Tier(tier)
        handler = self._handlers.get(tier)
        if handler is None:
            raise HandlerNotRegisteredError(f"No handler registered for tier {tier.value}", details={"tier": tier.value})
        return handler

    def pool(self, tier: Tier) -> TierWorkerPool:
        tier = Tier(tier)
        pool = self._pools.get(tier)
        if pool is None:
            pool = TierWorkerPool(
                tier=tier,
                handler=self.handler_for(tier),
                policy=self._policies[tier],
                manager=self._manager,
                resilience=self._resilience,
                clock=self._clock,
                retry_policy=self._retry_policy,
                config=self._config,
            )
            self._pools[tier] = pool
        return pool

    async def run_once(self, tier: Tier) -> bool:
        """Process at most one job of ``tier`` on the caller's task."""
        return await self.pool(tier).run_once()

    async def drain(self, tier: Tier, max_jobs: int = 1000) -> int:
        """Process ready jobs of ``tier`` until none is left. Returns the count."""
        processed = 0
        while processed < max_jobs and await self.run_once(tier):
            processed += 1
        return processed

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for tier in Tier:
            if tier not in self._handlers:
                logger.warning("No handler for tier, pool not started", stage="WP.1", tier=tier.value)
                continue
            self.pool(tier).start()

    async def stop(self) -> None:
        """
        Graceful shutdown: let in-flight jobs finish within the shutdown
        timeout, then cancel whatever is left.
        """
        if not self._running:
            return
        self._running = False

        tasks: list[asyncio.Task] = []
        for pool in self._pools.values():
            pool.request_stop()
            tasks.extend(pool.tasks)

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._config.shutdown_timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Cancelled workers after shutdown timeout", stage="WP.1", count=len(pending))

        for pool in self._pools.values():
            pool.clear_tasks()
        logger.info("Worker pools stopped", stage="WP.1")

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {tier.value: pool.get_stats() for tier, pool in self._pools.items()}
