"""
Unit Tests for the Tiered Queue Manager

Broker/fallback routing, merged dequeue order, job outcomes, stalled-job
reclaim, fallback promotion and health reporting.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from incident_pipeline.application.services.tiered_queue_manager import TieredQueueManager
from incident_pipeline.core.config.constants import QueueBackend, Tier
from incident_pipeline.core.exceptions import ConfigurationError, EnqueueFailure
from incident_pipeline.core.resilience import CircuitState
from incident_pipeline.jobs.models import JobOptions, JobStatus
from tests.test_fixtures import FakeClock, FakeRedis, build_manager, make_settings

NOW = JobOptions(delay_ms=0)


def opts(**kwargs):
    return JobOptions(delay_ms=0, **kwargs)


async def dequeue_all(manager, tier):
    ids = []
    while (job := await manager.dequeue(tier)) is not None:
        ids.append(job.id)
        await manager.complete(job)
    return ids


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def manager(clock, redis):
    return build_manager(clock, make_settings(), redis=redis, with_ping=True)


@pytest.fixture
def memory_manager(clock):
    return build_manager(clock, make_settings())


@pytest.mark.unit
class TestConstruction:
    def test_every_tier_required(self, clock):
        full = build_manager(clock, make_settings())
        fallback = {Tier.EMERGENCY: full._fallback[Tier.EMERGENCY]}

        with pytest.raises(ConfigurationError) as exc_info:
            TieredQueueManager(
                make_settings().tier_policies, full.resilience, fallback, full.dead_letters, clock
            )
        assert "Standard" in exc_info.value.details["missing"]


@pytest.mark.unit
class TestEnqueue:
    @pytest.mark.asyncio
    async def test_uses_broker_when_ready(self, manager):
        result = await manager.enqueue(Tier.STANDARD, {"report_id": "r1"})

        assert result.backend is QueueBackend.BROKER
        assert not result.fallback
        assert result.queue_name == "standard"
        assert result.estimated_delay == 1000

    @pytest.mark.asyncio
    async def test_tier_defaults_and_overrides(self, manager):
        default = manager.build_job(Tier.EMERGENCY, {}, JobOptions())
        assert (default.priority, default.max_retries, default.ready_at) == (1, 2, default.created_at)

        custom = manager.build_job(Tier.EMERGENCY, {}, JobOptions(priority=5, attempts=1, delay_ms=250, job_id="x"))
        assert (custom.priority, custom.max_retries, custom.id) == (5, 0, "x")
        assert custom.ready_at == custom.created_at + 250

    @pytest.mark.asyncio
    async def test_accepts_dict_options(self, manager):
        result = await manager.enqueue(Tier.EMAIL, {"to": "ops"}, {"delay": 0, "jobId": "mail-1"})
        assert result.job_id == "mail-1"
        assert result.estimated_delay == 0

    @pytest.mark.asyncio
    async def test_attempts_must_be_positive(self, manager):
        with pytest.raises(ValueError):
            await manager.enqueue(Tier.STANDARD, {}, opts(attempts=0))

    @pytest.mark.asyncio
    async def test_broker_failure_falls_back(self, manager, redis):
        redis.fail = True
        result = await manager.enqueue(Tier.STANDARD, {"report_id": "r1"}, NOW)

        assert result.backend is QueueBackend.MEMORY
        assert result.fallback
        assert manager.resilience.breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_open_circuit_skips_broker(self, manager, redis):
        redis.fail = True
        for _ in range(5):
            await manager.enqueue(Tier.STANDARD, {}, NOW)
        assert manager.resilience.breaker.state is CircuitState.OPEN

        calls = redis.calls
        result = await manager.enqueue(Tier.STANDARD, {}, NOW)
        assert result.fallback
        assert redis.calls == calls

    @pytest.mark.asyncio
    async def test_enqueue_failure_when_fallback_full(self, clock):
        manager = build_manager(clock, make_settings(), fallback_max_size=1)
        await manager.enqueue(Tier.DEVICE, {}, NOW)

        with pytest.raises(EnqueueFailure) as exc_info:
            await manager.enqueue(Tier.DEVICE, {}, NOW)
        assert exc_info.value.details["reason"] == "no_broker"
        assert exc_info.value.details["original_error"] == "QueueFullError"


@pytest.mark.unit
class TestDequeueOrder:
    @pytest.mark.asyncio
    async def test_priority_then_fifo_on_broker(self, manager):
        for job_id, priority in [("p3", 3), ("p1a", 1), ("p2", 2), ("p1b", 1)]:
            await manager.enqueue(Tier.STANDARD, {}, opts(priority=priority, job_id=job_id))

        assert await dequeue_all(manager, Tier.STANDARD) == ["p1a", "p1b", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_broker_down_keeps_order(self, manager, redis):
        redis.fail = True
        for job_id, priority in [("p3", 3), ("p1a", 1), ("p2", 2), ("p1b", 1)]:
            result = await manager.enqueue(Tier.STANDARD, {}, opts(priority=priority, job_id=job_id))
            assert result.fallback

        assert await dequeue_all(manager, Tier.STANDARD) == ["p1a", "p1b", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_merges_broker_and_fallback_heads(self, manager, redis):
        await manager.enqueue(Tier.STANDARD, {}, opts(priority=2, job_id="broker-p2"))
        redis.fail = True
        await manager.enqueue(Tier.STANDARD, {}, opts(priority=1, job_id="memory-p1"))
        await manager.enqueue(Tier.STANDARD, {}, opts(priority=3, job_id="memory-p3"))
        redis.fail = False

        assert await dequeue_all(manager, Tier.STANDARD) == ["memory-p1", "broker-p2", "memory-p3"]

    @pytest.mark.asyncio
    async def test_fallback_wins_ties(self, manager, redis):
        await manager.enqueue(Tier.STANDARD, {}, opts(job_id="broker"))
        redis.fail = True
        await manager.enqueue(Tier.STANDARD, {}, opts(job_id="memory"))
        redis.fail = False

        assert await dequeue_all(manager, Tier.STANDARD) == ["memory", "broker"]

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, manager, clock):
        await manager.enqueue(Tier.STANDARD, {}, JobOptions(delay_ms=5000))

        assert await manager.dequeue(Tier.STANDARD) is None
        clock.advance(5)
        assert await manager.dequeue(Tier.STANDARD) is not None

    @pytest.mark.asyncio
    async def test_tiers_are_isolated(self, manager):
        await manager.enqueue(Tier.EMAIL, {}, NOW)
        assert await manager.dequeue(Tier.DEVICE) is None
        assert (await manager.dequeue(Tier.EMAIL)).tier is Tier.EMAIL


@pytest.mark.unit
class TestOutcomes:
    @pytest.mark.asyncio
    async def test_complete_once(self, manager):
        await manager.enqueue(Tier.STANDARD, {}, NOW)
        job = await manager.dequeue(Tier.STANDARD)

        assert await manager.complete(job) is True
        assert job.status is JobStatus.COMPLETED
        assert await manager.complete(job) is False
        assert (await manager.get_queue_stats())["Standard"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_schedule_retry_consumes_retry_and_delays(self, manager, clock):
        await manager.enqueue(Tier.STANDARD, {}, NOW)
        job = await manager.dequeue(Tier.STANDARD)

        assert await manager.schedule_retry(job, "RuntimeError: boom", 2000)
        assert job.retries_remaining == 0
        assert job.attempts_made == 1
        assert job.status is JobStatus.RETRY_SCHEDULED

        assert await manager.dequeue(Tier.STANDARD) is None
        clock.advance(2)
        retried = await manager.dequeue(Tier.STANDARD)
        assert retried.id == job.id
        assert retried.last_error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_schedule_retry_requires_remaining_retries(self, manager):
        await manager.enqueue(Tier.ANALYTICS, {}, NOW)
        job = await manager.dequeue(Tier.ANALYTICS)

        with pytest.raises(ValueError):
            await manager.schedule_retry(job, "boom", 0)

    @pytest.mark.asyncio
    async def test_dead_letter(self, manager):
        await manager.enqueue(Tier.STANDARD, {"report_id": "r9"}, NOW)
        job = await manager.dequeue(Tier.STANDARD)
        await manager.schedule_retry(job, "first", 0)
        job = await manager.dequeue(Tier.STANDARD)

        assert await manager.dead_letter(job, "second")
        records = await manager.dead_letters.list()
        assert records[0].job_id == job.id
        assert records[0].attempts_made == 1
        assert records[0].reason == "retries_exhausted"
        assert (await manager.get_queue_stats())["Standard"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_stalls_do_not_consume_retries(self, manager):
        await manager.enqueue(Tier.EMERGENCY, {}, NOW)

        job = await manager.dequeue(Tier.EMERGENCY)
        assert await manager.requeue_stalled(job)
        job = await manager.dequeue(Tier.EMERGENCY)
        assert job.stalled_count == 1
        assert job.retries_remaining == 2

        # Emergency tolerates one stall
        assert await manager.requeue_stalled(job)
        assert await manager.dequeue(Tier.EMERGENCY) is None
        records = await manager.dead_letters.list()
        assert records[0].reason == "stalled_limit"
        assert records[0].attempts_made == 0

    @pytest.mark.asyncio
    async def test_release_failure_leaves_job_for_sweep(self, manager, redis):
        await manager.enqueue(Tier.STANDARD, {}, NOW)
        job = await manager.dequeue(Tier.STANDARD)

        redis.fail = True
        assert await manager.complete(job) is False
        redis.fail = False
        assert len(await manager._broker[Tier.STANDARD].active_jobs()) == 1


@pytest.mark.unit
class TestStalledSweep:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("use_broker", [True, False])
    async def test_reclaims_jobs_past_budget(self, clock, use_broker):
        manager = build_manager(clock, make_settings(), redis=FakeRedis() if use_broker else None)
        await manager.enqueue(Tier.STANDARD, {}, NOW)
        holder = await manager.dequeue(Tier.STANDARD)

        clock.advance(30)
        assert await manager.reclaim_stalled(Tier.STANDARD) == 0

        clock.advance(31)
        assert await manager.reclaim_stalled(Tier.STANDARD) == 1

        # The original holder lost the job; the next consumer gets it
        assert await manager.complete(holder) is False
        again = await manager.dequeue(Tier.STANDARD)
        assert again.id == holder.id
        assert again.stalled_count == 1
        assert again.retries_remaining == holder.max_retries


@pytest.mark.unit
class TestFallbackPromotion:
    @pytest.mark.asyncio
    async def test_promotes_fallback_jobs_to_broker(self, manager, redis):
        redis.fail = True
        await manager.enqueue(Tier.STANDARD, {}, opts(job_id="a"))
        await manager.enqueue(Tier.EMAIL, {}, opts(job_id="b"))
        redis.fail = False

        assert await manager.promote_fallback() == 2
        stats = await manager.get_queue_stats()
        assert stats["Standard"]["fallback_size"] == 0
        assert stats["Standard"]["waiting"] == 1

        job = await manager.dequeue(Tier.STANDARD)
        assert job.backend is QueueBackend.BROKER

    @pytest.mark.asyncio
    async def test_interrupted_promotion_returns_jobs(self, manager, redis, monkeypatch):
        redis.fail = True
        for job_id in ("first", "second", "third"):
            await manager.enqueue(Tier.STANDARD, {}, opts(job_id=job_id))
        redis.fail = False

        broker = manager._broker[Tier.STANDARD]
        original_push = broker.push

        async def flaky_push(job, now_ms):
            if job.id == "second":
                raise RedisConnectionError("connection reset")
            return await original_push(job, now_ms)

        monkeypatch.setattr(broker, "push", flaky_push)

        assert await manager.promote_fallback() == 1
        stats = await manager.get_queue_stats()
        assert stats["Standard"]["fallback_size"] == 2

        monkeypatch.undo()
        assert sorted(await dequeue_all(manager, Tier.STANDARD)) == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_job_that_no_longer_fits_fallback_is_dead_lettered(self, clock, redis, monkeypatch):
        manager = build_manager(clock, make_settings(), redis=redis, fallback_max_size=3)
        redis.fail = True
        for job_id in ("first", "second", "third"):
            await manager.enqueue(Tier.STANDARD, {}, opts(job_id=job_id))
        redis.fail = False

        fallback = manager._fallback[Tier.STANDARD]
        broker = manager._broker[Tier.STANDARD]
        original_push = broker.push
        late_arrivals = []

        async def flaky_push(job, now_ms):
            if job.id == "second":
                # Producers refill the fallback while the batch is out
                if not late_arrivals:
                    for job_id in ("late-1", "late-2"):
                        late = manager.build_job(Tier.STANDARD, {}, opts(job_id=job_id))
                        await fallback.push(late, now_ms)
                        late_arrivals.append(job_id)
                raise RedisConnectionError("connection reset")
            return await original_push(job, now_ms)

        monkeypatch.setattr(broker, "push", flaky_push)

        assert await manager.promote_fallback() == 1
        assert await fallback.size() == 3

        records = await manager.dead_letters.list()
        assert [(r.job_id, r.reason) for r in records] == [("third", "promotion_requeue_failed")]
        assert "full" in records[0].error

    @pytest.mark.asyncio
    async def test_promotion_cycle_resumes_after_open_timeout(self, manager, redis, clock):
        redis.fail = True
        for _ in range(5):
            await manager.enqueue(Tier.STANDARD, {}, NOW)
        assert not manager.resilience.is_ready().ready

        redis.fail = False
        assert await manager.run_promotion_cycle() == 0

        clock.advance(61)
        assert await manager.run_promotion_cycle() == 5
        assert manager.resilience.breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_probe_lets_health_score_recover(self, manager, redis):
        redis.fail = True
        await manager.enqueue(Tier.STANDARD, {}, NOW)
        redis.fail = False
        manager.resilience.health.score = 20

        assert await manager.run_promotion_cycle() == 0
        assert manager.resilience.health.score == 25
        assert await manager.run_promotion_cycle() == 0
        assert await manager.run_promotion_cycle() == 1

    @pytest.mark.asyncio
    async def test_nothing_to_promote_without_broker(self, memory_manager):
        await memory_manager.enqueue(Tier.STANDARD, {}, NOW)
        assert await memory_manager.promote_fallback() == 0

    @pytest.mark.asyncio
    async def test_promoter_task_lifecycle(self, manager):
        manager.start_promoter()
        assert manager._promoter_task is not None
        await manager.stop_promoter()
        assert manager._promoter_task is None


@pytest.mark.unit
class TestStatsAndHealth:
    @pytest.mark.asyncio
    async def test_stats_cover_every_tier(self, manager):
        await manager.enqueue(Tier.EMERGENCY, {}, NOW)
        stats = await manager.get_queue_stats()

        assert set(stats) == {tier.value for tier in Tier}
        assert stats["Emergency"]["waiting"] == 1
        assert stats["Emergency"]["broker_available"] is True
        assert set(stats["Device"]) == {
            "waiting", "active", "completed", "failed", "delayed", "fallback_size", "broker_available"
        }

    @pytest.mark.asyncio
    async def test_stats_while_broker_down(self, manager, redis):
        redis.fail = True
        for _ in range(5):
            await manager.enqueue(Tier.STANDARD, {}, NOW)

        stats = await manager.get_queue_stats()
        assert stats["Standard"]["broker_available"] is False
        assert stats["Standard"]["fallback_size"] == 5

    @pytest.mark.asyncio
    async def test_healthy(self, manager):
        health = await manager.health_check()
        assert health["status"] == "healthy"
        assert health["broker_ready"] is True

    @pytest.mark.asyncio
    async def test_degraded_when_gate_closed(self, manager, redis):
        redis.fail = True
        for _ in range(5):
            await manager.enqueue(Tier.STANDARD, {}, NOW)

        health = await manager.health_check()
        assert health["status"] == "degraded"
        assert health["broker_reason"] == "circuit_open"

    @pytest.mark.asyncio
    async def test_critical_when_half_the_tiers_are_stuck(self, memory_manager):
        for tier in (Tier.STANDARD, Tier.EMAIL, Tier.DEVICE):
            for _ in range(51):
                await memory_manager.enqueue(tier, {}, NOW)

        health = await memory_manager.health_check()
        assert health["status"] == "critical"
        assert health["unhealthy_tiers"] == 3
        assert health["tiers"]["Email"]["issues"] == ["queue_stuck"]

    @pytest.mark.asyncio
    async def test_one_stuck_tier_is_degraded(self, memory_manager):
        for _ in range(51):
            await memory_manager.enqueue(Tier.ANALYTICS, {}, NOW)

        health = await memory_manager.health_check()
        assert health["status"] == "degraded"
        assert health["tiers"]["Analytics"]["status"] == "degraded"
