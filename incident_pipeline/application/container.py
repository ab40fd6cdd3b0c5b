"""
Pipeline Container

Explicit wiring of every component. Nothing here is a module-level
singleton: each call to ``build_pipeline`` returns an independent set of
objects that share one resilience layer, one clock and one settings object.

Usage:
    pipeline = await create_pipeline(settings, persistence=db, operator=pager)
    pipeline.register_handler(Tier.EMERGENCY, handle_emergency)
    await pipeline.start()
    result = await pipeline.process_report(event)
    ...
    await pipeline.stop()
"""

import random
from collections.abc import Mapping
from typing import Any

from redis import asyncio as redis

from incident_pipeline.application.services.emergency_path import EmergencyDirectPath
from incident_pipeline.application.services.report_intake import ProcessingResult, ReportIntake
from incident_pipeline.application.services.retry_policy import RetryPolicy
from incident_pipeline.application.services.tiered_queue_manager import TieredQueueManager
from incident_pipeline.application.services.worker_pool import (
    JobHandler,
    WorkerConfig,
    WorkerPoolDispatcher,
)
from incident_pipeline.classification.classifier import Classifier
from incident_pipeline.core.clock import SystemClock
from incident_pipeline.core.config.constants import QueueBackend, Tier
from incident_pipeline.core.config.settings import Settings
from incident_pipeline.core.exceptions import BrokerUnavailableError
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.interfaces.collaborators import Notifier, OperatorChannel, Persistence
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.core.resilience.connection_resilience import (
    ConnectionResilience,
    HealthListener,
)
from incident_pipeline.infrastructure.broker.redis_client import RedisConnection
from incident_pipeline.infrastructure.message_queue.dead_letter_store import DeadLetterStore
from incident_pipeline.infrastructure.message_queue.memory_queue import InMemoryJobQueue
from incident_pipeline.infrastructure.message_queue.redis_queue import RedisJobQueue
from incident_pipeline.infrastructure.monitoring.metrics_collector import MetricsCollector
from incident_pipeline.jobs.models import DeadLetterRecord, EnqueueResult, JobOptions

logger = get_logger(__name__)


class Pipeline:
    """Facade over the wired components; the outward API of the package."""

    def __init__(
        self,
        settings: Settings,
        clock: Clock,
        resilience: ConnectionResilience,
        classifier: Classifier,
        manager: TieredQueueManager,
        dispatcher: WorkerPoolDispatcher,
        emergency_path: EmergencyDirectPath,
        intake: ReportIntake,
        metrics: MetricsCollector | None = None,
        connection: RedisConnection | None = None,
    ):
        self.settings = settings
        self.clock = clock
        self.resilience = resilience
        self.classifier = classifier
        self.manager = manager
        self.dispatcher = dispatcher
        self.emergency_path = emergency_path
        self.intake = intake
        self.metrics = metrics
        self._connection = connection
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register_handler(self, tier: Tier, handler: JobHandler) -> None:
        self.dispatcher.register_handler(tier, handler)

    async def start(self) -> None:
        if self._started:
            return
        await self.dispatcher.start()
        self.manager.start_promoter()
        self._started = True
        logger.info("Pipeline started", stage="APP.1", broker=self.manager.has_broker)

    async def stop(self) -> None:
        """Stop workers and the promoter, flush what can be flushed, disconnect."""
        if self._started:
            await self.dispatcher.stop()
            await self.manager.stop_promoter()
            await self.emergency_path.wait_for_notifications()
            self._started = False

        if self.resilience.is_ready().ready:
            await self.manager.dead_letters.flush()
        pending = sum(s["fallback_size"] for s in (await self.manager.get_queue_stats()).values())
        if pending:
            logger.warning("Fallback queue not empty at shutdown; jobs are lost", stage="APP.2", count=pending)

        if self._connection is not None:
            await self._connection.disconnect()
        logger.info("Pipeline stopped", stage="APP.2")

    # ------------------------------------------------------------------
    # Outward API
    # ------------------------------------------------------------------

    async def process_report(self, event: Any, options: Mapping[str, Any] | None = None) -> ProcessingResult:
        return await self.intake.process_report(event, options)

    async def add_job(
        self,
        tier: Tier,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> EnqueueResult:
        return await self.intake.add_job(tier, payload, options)

    async def submit_job(
        self,
        job_type: str,
        payload: dict[str, Any],
        metadata: Mapping[str, Any] | None = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> EnqueueResult:
        return await self.intake.submit_job(job_type, payload, metadata, options)

    async def get_queue_stats(self) -> dict[str, dict[str, Any]]:
        return await self.manager.get_queue_stats()

    def get_health_status(self) -> dict[str, Any]:
        return self.resilience.get_health_status().to_dict()

    async def health_check(self) -> dict[str, Any]:
        return await self.manager.health_check()

    def get_processing_stats(self) -> dict[str, Any]:
        return {
            **self.intake.stats.to_dict(),
            "workers": self.dispatcher.get_stats(),
        }

    async def dead_letters(self, limit: int = 100) -> list[DeadLetterRecord]:
        return await self.manager.dead_letters.list(limit)

    def subscribe(self, listener: HealthListener):
        return self.resilience.subscribe(listener)


def build_pipeline(
    settings: Settings,
    persistence: Persistence,
    operator: OperatorChannel,
    notifier: Notifier | None = None,
    clock: Clock | None = None,
    redis_client: redis.Redis | None = None,
    metrics: MetricsCollector | None = None,
    rng: random.Random | None = None,
    connection: RedisConnection | None = None,
) -> Pipeline:
    """
    Wire a pipeline from already-constructed collaborators.

    Without a ``redis_client`` (or with ``QUEUE_BACKEND=memory``) every tier
    runs on the in-process fallback queue only.
    """
    clock = clock or SystemClock()
    policies = settings.tier_policies
    use_broker = redis_client is not None and settings.QUEUE_BACKEND is QueueBackend.BROKER
    prefix = settings.redis.REDIS_KEY_PREFIX

    resilience = ConnectionResilience.from_settings(settings, clock, metrics)

    fallback_queues = {
        tier: InMemoryJobQueue(tier, max_size=settings.workers.FALLBACK_MAX_SIZE) for tier in Tier
    }
    broker_queues = (
        {tier: RedisJobQueue(tier, redis_client, prefix=prefix) for tier in Tier} if use_broker else None
    )
    dead_letters = DeadLetterStore(resilience, redis_client if use_broker else None, prefix=prefix)

    manager = TieredQueueManager(
        policies=policies,
        resilience=resilience,
        fallback_queues=fallback_queues,
        dead_letters=dead_letters,
        clock=clock,
        broker_queues=broker_queues,
        metrics=metrics,
        ping=redis_client.ping if use_broker else None,
        promotion_interval_s=settings.workers.FALLBACK_PROMOTION_INTERVAL_S,
    )
    dispatcher = WorkerPoolDispatcher(
        manager=manager,
        policies=policies,
        resilience=resilience,
        clock=clock,
        retry_policy=RetryPolicy(rng=rng),
        config=WorkerConfig.from_settings(settings),
    )
    emergency_path = EmergencyDirectPath(
        manager=manager,
        handler_lookup=dispatcher.handler_for,
        persistence=persistence,
        operator=operator,
        clock=clock,
        notifier=notifier,
        metrics=metrics,
    )
    classifier = Classifier.from_settings(settings)
    intake = ReportIntake(classifier, manager, emergency_path, clock)

    return Pipeline(
        settings=settings,
        clock=clock,
        resilience=resilience,
        classifier=classifier,
        manager=manager,
        dispatcher=dispatcher,
        emergency_path=emergency_path,
        intake=intake,
        metrics=metrics,
        connection=connection,
    )


async def create_pipeline(
    settings: Settings,
    persistence: Persistence,
    operator: OperatorChannel,
    notifier: Notifier | None = None,
    clock: Clock | None = None,
    metrics: MetricsCollector | None = None,
) -> Pipeline:
    """
    Connect to Redis and wire a pipeline.

    A broker that is down at startup does not block the pipeline: the client
    is still wired, calls fail into the fallback queue, and the promoter's
    probe brings the broker back in once it answers.
    """
    if settings.QUEUE_BACKEND is QueueBackend.MEMORY:
        return build_pipeline(settings, persistence, operator, notifier, clock=clock, metrics=metrics)

    connection = RedisConnection(settings)
    try:
        await connection.connect()
    except BrokerUnavailableError as e:
        logger.warning("Starting with broker unavailable", stage="APP.0", error=e.message)

    return build_pipeline(
        settings,
        persistence,
        operator,
        notifier,
        clock=clock,
        redis_client=connection.client,
        metrics=metrics,
        connection=connection,
    )
