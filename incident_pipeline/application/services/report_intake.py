"""
Report Intake

Entry point used by the application layer for every submitted report:

    event -> Classifier -> Emergency direct path | Tiered queue manager

``process_report`` always returns a ``ProcessingResult``. Lower tiers fail
soft (logged, counted, ``success=False``); the only exception that escapes is
``EmergencyPathFailure``.

STAGE-RI: Report intake
-----------------------
RI.1: Classification
RI.2: Emergency routing
RI.3: Queue routing
RI.4: Enrichment follow-up
RI.5: Typed job submission
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from incident_pipeline.application.services.emergency_path import (
    QUEUE_USED_BROKER,
    QUEUE_USED_FALLBACK,
    EmergencyDirectPath,
)
from incident_pipeline.application.services.tiered_queue_manager import TieredQueueManager
from incident_pipeline.classification.classifier import Classifier, route_job
from incident_pipeline.core.config.constants import (
    PROCESSING_TIME_EMA_ALPHA,
    TAG_BACKGROUND_ENRICHMENT,
    Tier,
)
from incident_pipeline.core.exceptions import EmergencyPathFailure, EnqueueFailure
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.logging.logger import get_logger, log_stage
from incident_pipeline.jobs.models import EnqueueResult, JobOptions

logger = get_logger(__name__)

QUEUE_USED_NONE = "none"
ENRICHMENT_JOB_TYPE = "location_enrichment"


@dataclass(frozen=True)
class ProcessingResult:
    """Structured outcome of ``process_report``."""

    success: bool
    report_id: str
    tier: Tier
    processing_time: float
    queue_used: str
    fallback: bool = False
    needs_review: bool = False
    reasons: tuple[str, ...] = ()
    job_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "report_id": self.report_id,
            "tier": self.tier.value,
            "processing_time": round(self.processing_time, 3),
            "queue_used": self.queue_used,
            "fallback": self.fallback,
            "needs_review": self.needs_review,
            "reasons": list(self.reasons),
            "job_id": self.job_id,
            "error": self.error,
        }


@dataclass
class ProcessingStats:
    total_processed: int = 0
    total_failed: int = 0
    emergency_processed: int = 0
    fallback_used: int = 0
    needs_review: int = 0
    average_processing_time: float = 0.0

    def record(self, result: ProcessingResult) -> None:
        if result.success:
            self.total_processed += 1
        else:
            self.total_failed += 1
        if result.tier is Tier.EMERGENCY and result.success:
            self.emergency_processed += 1
        if result.fallback:
            self.fallback_used += 1
        if result.needs_review:
            self.needs_review += 1

        samples = self.total_processed + self.total_failed
        if samples == 1:
            self.average_processing_time = result.processing_time
        else:
            self.average_processing_time = (
                PROCESSING_TIME_EMA_ALPHA * result.processing_time
                + (1 - PROCESSING_TIME_EMA_ALPHA) * self.average_processing_time
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "emergency_processed": self.emergency_processed,
            "fallback_used": self.fallback_used,
            "needs_review": self.needs_review,
            "average_processing_time": round(self.average_processing_time, 3),
        }


def _report_id(event: Any, options: Mapping[str, Any]) -> str:
    if options.get("report_id"):
        return str(options["report_id"])
    if isinstance(event, Mapping):
        for key in ("report_id", "reportId", "id", "_id"):
            value = event.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                return str(value)
    return str(uuid.uuid4())


class ReportIntake:
    """
    Classifies reports and routes them to the direct path or a tier queue.

    Usage:
        intake = ReportIntake(classifier, manager, emergency_path, clock)
        result = await intake.process_report({"description": "..."})
    """

    def __init__(
        self,
        classifier: Classifier,
        manager: TieredQueueManager,
        emergency_path: EmergencyDirectPath,
        clock: Clock,
    ):
        self._classifier = classifier
        self._manager = manager
        self._emergency = emergency_path
        self._clock = clock
        self.stats = ProcessingStats()

    async def process_report(
        self,
        event: Any,
        options: Mapping[str, Any] | None = None,
    ) -> ProcessingResult:
        """
        Classify and dispatch one report.

        Args:
            event: Raw report data
            options: Optional ``report_id`` plus ``priority`` / ``delay`` /
                ``attempts`` overrides for the queued job

        Raises:
            EmergencyPathFailure: Emergency inline run and degraded write both failed
        """
        options = dict(options or {})
        started = self._clock.now()
        report_id = _report_id(event, options)

        # STAGE-RI.1: Classification
        classification = self._classifier.classify(event)
        log_stage(
            logger,
            "RI.1",
            "Report classified",
            report_id=report_id,
            tier=classification.tier.value,
            reasons=list(classification.reasons),
        )

        payload = {
            "report_id": report_id,
            "event": dict(event) if isinstance(event, Mapping) else {"raw": repr(event)},
            "classification": classification.to_dict(),
        }

        if classification.tier is Tier.EMERGENCY:
            result = await self._process_emergency(payload, report_id, classification, started)
        else:
            result = await self._process_queued(payload, report_id, classification, options, started)

        self.stats.record(result)
        return result

    def _elapsed_ms(self, started: float) -> float:
        return max(0.0, (self._clock.now() - started) * 1000.0)

    async def _process_emergency(self, payload, report_id, classification, started) -> ProcessingResult:
        """STAGE-RI.2: Emergency routing"""
        try:
            outcome = await self._emergency.execute(payload, report_id)
        except EmergencyPathFailure:
            self.stats.total_failed += 1
            raise

        return ProcessingResult(
            success=True,
            report_id=report_id,
            tier=Tier.EMERGENCY,
            processing_time=self._elapsed_ms(started),
            queue_used=outcome.queue_used,
            fallback=outcome.fallback,
            needs_review=classification.needs_review or outcome.needs_review,
            reasons=classification.reasons,
            job_id=outcome.job_id,
            error=outcome.error,
        )

    async def _process_queued(self, payload, report_id, classification, options, started) -> ProcessingResult:
        """STAGE-RI.3: Queue routing"""
        tier = classification.tier
        job_options = JobOptions(
            priority=options.get("priority", classification.priority),
            delay_ms=options.get("delay_ms", options.get("delay")),
            attempts=options.get("attempts"),
            job_id=report_id,
            metadata={"reasons": list(classification.reasons)},
        )
        try:
            enqueued = await self._manager.enqueue(tier, payload, job_options)
        except EnqueueFailure as e:
            logger.error(
                "Report could not be queued",
                stage="RI.3",
                report_id=report_id,
                tier=tier.value,
                error=e.message,
            )
            return ProcessingResult(
                success=False,
                report_id=report_id,
                tier=tier,
                processing_time=self._elapsed_ms(started),
                queue_used=QUEUE_USED_NONE,
                needs_review=True,
                reasons=classification.reasons,
                error=e.message,
            )

        if classification.has_tag(TAG_BACKGROUND_ENRICHMENT):
            await self._enqueue_enrichment(report_id, payload["event"])

        return ProcessingResult(
            success=True,
            report_id=report_id,
            tier=tier,
            processing_time=self._elapsed_ms(started),
            queue_used=QUEUE_USED_FALLBACK if enqueued.fallback else QUEUE_USED_BROKER,
            fallback=enqueued.fallback and self._manager.has_broker,
            needs_review=classification.needs_review,
            reasons=classification.reasons,
            job_id=enqueued.job_id,
        )

    async def _enqueue_enrichment(self, report_id: str, event: dict[str, Any]) -> None:
        """
        STAGE-RI.4: Enrichment follow-up

        Background location enrichment for reports that matched a safety
        keyword. Failure only affects the follow-up, never the report.
        """
        payload = {
            "job_type": ENRICHMENT_JOB_TYPE,
            "report_id": report_id,
            "location": event.get("location"),
        }
        try:
            await self.submit_job(
                ENRICHMENT_JOB_TYPE,
                payload,
                options={"job_id": f"{report_id}:{ENRICHMENT_JOB_TYPE}"},
            )
        except EnqueueFailure as e:
            logger.warning(
                "Enrichment job not queued",
                stage="RI.4",
                report_id=report_id,
                error=e.message,
            )

    # ------------------------------------------------------------------
    # Outward job API
    # ------------------------------------------------------------------

    async def add_job(
        self,
        tier: Tier,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """
        Enqueue a job for an explicit tier.

        Raises:
            EnqueueFailure: neither backend accepted the job
        """
        return await self._manager.enqueue(Tier(tier), payload, options)

    async def submit_job(
        self,
        job_type: str,
        payload: dict[str, Any],
        metadata: Mapping[str, Any] | None = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """
        Enqueue a typed job, picking the tier with ``route_job``.

        STAGE-RI.5: Typed job submission
        """
        tier = route_job(job_type, metadata)
        job_options = JobOptions.from_mapping(options)
        if tier is Tier.EMERGENCY and job_options.priority is None:
            job_options = JobOptions(
                priority=1,
                delay_ms=job_options.delay_ms,
                attempts=job_options.attempts,
                job_id=job_options.job_id,
                metadata=job_options.metadata,
            )
        logger.debug("Typed job submitted", stage="RI.5", job_type=job_type, tier=tier.value)
        return await self._manager.enqueue(tier, payload, job_options)
