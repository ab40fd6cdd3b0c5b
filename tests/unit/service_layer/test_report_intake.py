"""
Unit Tests for Report Intake

End-to-end routing of reports through classification, the direct path and
the tiered queues, plus the typed job API and processing statistics.
"""

import pytest

from incident_pipeline.application.services.report_intake import ProcessingResult, ProcessingStats
from incident_pipeline.core.config.constants import QueueBackend, Tier
from incident_pipeline.core.exceptions import EmergencyPathFailure
from tests.test_fixtures import FakeRedis, RecordingHandler, RecordingPersistence


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def pipeline(pipeline_factory, redis):
    return pipeline_factory(redis_client=redis)


@pytest.mark.unit
class TestEmergencyReports:
    @pytest.mark.asyncio
    async def test_gender_sensitive_report_is_handled_inline(self, pipeline):
        handler = RecordingHandler()
        pipeline.register_handler(Tier.EMERGENCY, handler)

        result = await pipeline.process_report(
            {"reportId": "rep-1", "genderSensitive": True, "description": "someone is following me"}
        )

        assert result.success
        assert result.tier is Tier.EMERGENCY
        assert result.report_id == "rep-1"
        assert result.job_id == "rep-1"
        assert result.queue_used == "direct"
        assert not result.fallback
        assert result.reasons == ("explicit-safety-flag:genderSensitive",)

        assert len(handler.calls) == 1
        assert handler.calls[0].payload["classification"]["tier"] == "Emergency"
        assert pipeline.get_processing_stats()["emergency_processed"] == 1

    @pytest.mark.asyncio
    async def test_broker_down_and_inline_failure_still_succeeds(self, pipeline, redis, persistence):
        redis.fail = True
        pipeline.register_handler(Tier.EMERGENCY, RecordingHandler(fail_times=-1))

        result = await pipeline.process_report({"id": "rep-2", "genderSensitive": True})

        assert result.success
        assert result.fallback
        assert result.needs_review
        assert result.queue_used == "fallback"
        assert persistence.records[0]["report_id"] == "rep-2"
        assert persistence.records[0]["needs_review"] is True

        stats = pipeline.get_processing_stats()
        assert stats["fallback_used"] == 1
        assert stats["needs_review"] == 1

    @pytest.mark.asyncio
    async def test_total_failure_propagates(self, pipeline_factory):
        pipeline = pipeline_factory(persistence_override=RecordingPersistence(fail=True))
        pipeline.register_handler(Tier.EMERGENCY, RecordingHandler(fail_times=-1))

        with pytest.raises(EmergencyPathFailure):
            await pipeline.process_report({"urgency": "critical"})

        assert pipeline.get_processing_stats()["total_failed"] == 1


@pytest.mark.unit
class TestQueuedReports:
    @pytest.mark.asyncio
    async def test_default_report_goes_to_standard_queue(self, pipeline):
        result = await pipeline.process_report({"report_id": "rep-3", "description": "broken streetlight"})

        assert result.success
        assert result.tier is Tier.STANDARD
        assert result.queue_used == "broker"
        assert result.job_id == "rep-3"
        assert result.reasons == ("default",)

        stats = await pipeline.get_queue_stats()
        assert stats["Standard"]["delayed"] == 1

    @pytest.mark.asyncio
    async def test_options_override_job_defaults(self, pipeline, clock):
        await pipeline.process_report({"report_id": "rep-4"}, {"priority": 1, "delay": 0})

        job = await pipeline.manager.dequeue(Tier.STANDARD)
        assert job.id == "rep-4"
        assert job.priority == 1
        assert job.metadata == {"reasons": ["default"]}

    @pytest.mark.asyncio
    async def test_safety_keyword_schedules_enrichment(self, pipeline):
        result = await pipeline.process_report(
            {"report_id": "rep-5", "description": "I was followed", "location": {"lat": 1.0, "lng": 2.0}}
        )

        assert result.tier is Tier.STANDARD
        stats = await pipeline.get_queue_stats()
        assert stats["Background"]["delayed"] == 1

        records = pipeline.manager._broker[Tier.BACKGROUND]
        enrichment = (await records.take_queued(1))[0]
        assert enrichment.id == "rep-5:location_enrichment"
        assert enrichment.payload == {
            "job_type": "location_enrichment",
            "report_id": "rep-5",
            "location": {"lat": 1.0, "lng": 2.0},
        }

    @pytest.mark.asyncio
    async def test_broker_down_uses_fallback(self, pipeline, redis):
        redis.fail = True
        result = await pipeline.process_report({"description": "pothole"})

        assert result.success
        assert result.fallback
        assert result.queue_used == "fallback"
        assert (await pipeline.get_queue_stats())["Standard"]["fallback_size"] == 1

    @pytest.mark.asyncio
    async def test_memory_only_deployment_is_not_a_fallback(self, pipeline_factory):
        result = await pipeline_factory().process_report({"description": "pothole"})

        assert result.success
        assert not result.fallback

    @pytest.mark.asyncio
    async def test_malformed_report_is_flagged(self, pipeline):
        result = await pipeline.process_report({"description": ["not", "text"]})

        assert result.success
        assert result.needs_review
        assert "malformed-input:description" in result.reasons

    @pytest.mark.asyncio
    async def test_non_mapping_report(self, pipeline):
        result = await pipeline.process_report("free text report")

        assert result.success
        assert result.needs_review
        assert result.tier is Tier.STANDARD

    @pytest.mark.asyncio
    async def test_queue_full_fails_soft(self, pipeline_factory):
        pipeline = pipeline_factory(FALLBACK_MAX_SIZE=1)
        assert (await pipeline.process_report({"description": "one"})).success

        result = await pipeline.process_report({"description": "two"})

        assert not result.success
        assert result.queue_used == "none"
        assert result.error
        assert pipeline.get_processing_stats()["total_failed"] == 1

    @pytest.mark.asyncio
    async def test_generated_report_ids_are_unique(self, pipeline):
        first = await pipeline.process_report({"description": "a"})
        second = await pipeline.process_report({"description": "a"})
        assert first.report_id != second.report_id


@pytest.mark.unit
class TestJobApi:
    @pytest.mark.asyncio
    async def test_add_job_to_explicit_tier(self, pipeline):
        result = await pipeline.add_job(Tier.DEVICE, {"device": "d-1"}, {"delay": 0})

        assert result.tier is Tier.DEVICE
        assert result.backend is QueueBackend.BROKER
        assert result.estimated_delay == 0

    @pytest.mark.asyncio
    async def test_submit_job_routes_by_type(self, pipeline):
        result = await pipeline.submit_job("email", {"to": "ops"})
        assert result.tier is Tier.EMAIL
        assert result.queue_name == "email"

    @pytest.mark.asyncio
    async def test_submit_job_escalates_on_safety_metadata(self, pipeline):
        result = await pipeline.submit_job("analytics", {"n": 1}, metadata={"genderSensitive": True})

        assert result.tier is Tier.EMERGENCY
        job = await pipeline.manager.dequeue(Tier.EMERGENCY)
        assert job.priority == 1


@pytest.mark.unit
class TestProcessingStats:
    def make_result(self, processing_time, success=True, tier=Tier.STANDARD, fallback=False):
        return ProcessingResult(
            success=success,
            report_id="r",
            tier=tier,
            processing_time=processing_time,
            queue_used="broker",
            fallback=fallback,
        )

    def test_first_sample_sets_average(self):
        stats = ProcessingStats()
        stats.record(self.make_result(40.0))
        assert stats.average_processing_time == 40.0

    def test_exponential_moving_average(self):
        stats = ProcessingStats()
        stats.record(self.make_result(10.0))
        stats.record(self.make_result(20.0))
        assert stats.average_processing_time == pytest.approx(11.0)

    def test_counts(self):
        stats = ProcessingStats()
        stats.record(self.make_result(1.0, tier=Tier.EMERGENCY, fallback=True))
        stats.record(self.make_result(1.0, success=False))

        assert stats.to_dict() == {
            "total_processed": 1,
            "total_failed": 1,
            "emergency_processed": 1,
            "fallback_used": 1,
            "needs_review": 0,
            "average_processing_time": 1.0,
        }

    def test_result_to_dict(self):
        data = self.make_result(1.23456).to_dict()
        assert data["tier"] == "Standard"
        assert data["processing_time"] == 1.235
        assert data["reasons"] == []
