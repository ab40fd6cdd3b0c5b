"""
Emergency Direct-Path Processor

Emergency reports are handled inline as soon as they are classified, without
waiting for a worker:

1. The Emergency handler runs immediately, bounded by the Emergency
   processing budget.
2. At the same time a redundant copy (same job id, ``direct_path`` metadata)
   is enqueued for background reconciliation. Best effort. The copy becomes
   ready only after the inline budget (plus a grace period) has passed, so
   the same id is never executed by the inline run and a worker at once.
3. If the inline run fails, a minimal degraded record flagged
   ``needs_review`` is written straight to persistence.
4. If that write fails too, the operator channel is alerted and
   ``EmergencyPathFailure`` is raised. Nothing else leaves this module.

The notifier is called fire-and-forget once the report is handled.

STAGE-EDP: Emergency direct path
--------------------------------
EDP.1: Inline execution
EDP.2: Redundant enqueue
EDP.3: Degraded record
EDP.4: Operator alert
EDP.5: Notification
"""

import asyncio
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from incident_pipeline.application.services.tiered_queue_manager import TieredQueueManager
from incident_pipeline.application.services.worker_pool import run_within_budget
from incident_pipeline.core.config.constants import DIRECT_PATH_COPY_GRACE_MS, QueueBackend, Tier
from incident_pipeline.core.exceptions import EmergencyPathFailure, EnqueueFailure
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.interfaces.collaborators import Notifier, OperatorChannel, Persistence
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.infrastructure.monitoring.metrics_collector import MetricsCollector
from incident_pipeline.jobs.models import EnqueueResult, Job, JobOptions

logger = get_logger(__name__)

HandlerLookup = Callable[[Tier], Callable[[Job], Awaitable[Any]]]

QUEUE_USED_DIRECT = "direct"
QUEUE_USED_BROKER = "broker"
QUEUE_USED_FALLBACK = "fallback"


@dataclass(frozen=True)
class DirectPathOutcome:
    """What happened to one Emergency report on the direct path."""

    job_id: str
    inline_succeeded: bool
    enqueue_result: EnqueueResult | None
    degraded_record_saved: bool = False
    error: str | None = None
    broker_bypassed: bool = False

    @property
    def needs_review(self) -> bool:
        return not self.inline_succeeded

    @property
    def fallback(self) -> bool:
        """Degraded record written, or the memory queue stood in for the broker."""
        return not self.inline_succeeded or self.broker_bypassed

    @property
    def queue_used(self) -> str:
        if self.inline_succeeded or self.enqueue_result is None:
            return QUEUE_USED_DIRECT
        if self.enqueue_result.backend is QueueBackend.MEMORY:
            return QUEUE_USED_FALLBACK
        return QUEUE_USED_BROKER


class EmergencyDirectPath:
    """
    Inline execution with a degraded-write safety net.

    Usage:
        path = EmergencyDirectPath(manager, dispatcher.handler_for, persistence,
                                   operator, clock, notifier=notifier)
        outcome = await path.execute(payload, report_id="r-1")
    """

    def __init__(
        self,
        manager: TieredQueueManager,
        handler_lookup: HandlerLookup,
        persistence: Persistence,
        operator: OperatorChannel,
        clock: Clock,
        notifier: Notifier | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._manager = manager
        self._handler_lookup = handler_lookup
        self._persistence = persistence
        self._operator = operator
        self._clock = clock
        self._notifier = notifier
        self._metrics = metrics
        self._notifications: set[asyncio.Task] = set()

    async def execute(self, payload: dict[str, Any], report_id: str) -> DirectPathOutcome:
        """
        Handle one Emergency report.

        Raises:
            EmergencyPathFailure: inline execution and the degraded write both failed
        """
        job = self._manager.build_job(
            Tier.EMERGENCY,
            payload,
            JobOptions(priority=1, job_id=report_id, metadata={"direct_path": True}),
        )

        inline_error, enqueue_result = await asyncio.gather(
            self._run_inline(job),
            self._enqueue_copy(payload, report_id),
        )
        broker_bypassed = (
            self._manager.has_broker
            and enqueue_result is not None
            and enqueue_result.backend is QueueBackend.MEMORY
        )

        if inline_error is None:
            self._record("inline_success")
            self._notify_later({"report_id": report_id, "tier": Tier.EMERGENCY.value, "needs_review": False})
            return DirectPathOutcome(
                job_id=job.id,
                inline_succeeded=True,
                enqueue_result=enqueue_result,
                broker_bypassed=broker_bypassed,
            )

        await self._write_degraded(job, report_id, inline_error, enqueue_result)
        self._record("degraded")
        self._notify_later({"report_id": report_id, "tier": Tier.EMERGENCY.value, "needs_review": True})
        return DirectPathOutcome(
            job_id=job.id,
            inline_succeeded=False,
            enqueue_result=enqueue_result,
            degraded_record_saved=True,
            error=inline_error,
            broker_bypassed=broker_bypassed,
        )

    async def _run_inline(self, job: Job) -> str | None:
        """
        STAGE-EDP.1: Inline execution

        Returns:
            None on success, otherwise a description of the failure.
        """
        budget = self._manager.policy(Tier.EMERGENCY).max_processing_time_s
        try:
            handler = self._handler_lookup(Tier.EMERGENCY)
            job.executions += 1
            finished = await run_within_budget(handler(job), budget)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Inline emergency handler failed",
                stage="EDP.1",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return f"{type(e).__name__}: {e}"

        if not finished:
            logger.error("Inline emergency handler timed out", stage="EDP.1", job_id=job.id, budget_s=budget)
            return f"inline handler exceeded {budget}s"

        logger.info("Emergency report handled inline", stage="EDP.1", job_id=job.id)
        return None

    async def _enqueue_copy(self, payload: dict[str, Any], report_id: str) -> EnqueueResult | None:
        """STAGE-EDP.2: Redundant enqueue"""
        try:
            result = await self._manager.enqueue(
                Tier.EMERGENCY,
                payload,
                JobOptions(
                    priority=1,
                    delay_ms=self._copy_delay_ms(),
                    job_id=report_id,
                    metadata={"direct_path": True},
                ),
            )
        except EnqueueFailure as e:
            logger.error(
                "Redundant emergency enqueue failed",
                stage="EDP.2",
                job_id=report_id,
                error=e.message,
            )
            return None
        return result

    def _copy_delay_ms(self) -> int:
        budget_s = self._manager.policy(Tier.EMERGENCY).max_processing_time_s
        return math.ceil(budget_s * 1000) + DIRECT_PATH_COPY_GRACE_MS

    async def _write_degraded(
        self,
        job: Job,
        report_id: str,
        inline_error: str,
        enqueue_result: EnqueueResult | None,
    ) -> None:
        """
        STAGE-EDP.3: Degraded record

        Raises:
            EmergencyPathFailure: persistence rejected the record
        """
        record = {
            "report_id": report_id,
            "job_id": job.id,
            "tier": Tier.EMERGENCY.value,
            "payload": job.payload,
            "status": "degraded",
            "needs_review": True,
            "error": inline_error,
            "queued_copy": enqueue_result.backend.value if enqueue_result else None,
            "created_at": self._clock.now_ms(),
        }
        try:
            await self._persistence.save(record)
        except Exception as e:
            failure = EmergencyPathFailure.from_exception(
                e,
                "Emergency report could not be processed or persisted",
                job_id=job.id,
                report_id=report_id,
                inline_error=inline_error,
                queued_copy=record["queued_copy"],
            )
            await self._alert_operator(failure)
            self._record("failed")
            raise failure from e

        logger.warning("Degraded emergency record saved", stage="EDP.3", job_id=job.id, report_id=report_id)

    async def _alert_operator(self, failure: EmergencyPathFailure) -> None:
        """STAGE-EDP.4: Operator alert"""
        logger.critical("Emergency path failed completely", stage="EDP.4", **failure.to_dict())
        try:
            await self._operator.alert(failure.message, failure.to_dict())
        except Exception as e:
            logger.critical(
                "Operator alert could not be delivered",
                stage="EDP.4",
                job_id=failure.job_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _notify_later(self, event: dict[str, Any]) -> None:
        """STAGE-EDP.5: Notification (fire-and-forget)"""
        if self._notifier is None:
            return
        task = asyncio.create_task(self._notify(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, event: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(event)
        except Exception as e:
            logger.warning(
                "Emergency notification failed",
                stage="EDP.5",
                report_id=event.get("report_id"),
                error=str(e),
                error_type=type(e).__name__,
            )

    async def wait_for_notifications(self) -> None:
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    def _record(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_direct_path(outcome)
