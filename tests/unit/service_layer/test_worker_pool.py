"""
Unit Tests for the Worker Pool Dispatcher

Handler execution, retry/backoff, dead-lettering, processing budget and the
pool lifecycle.
"""

import asyncio

import pytest

from incident_pipeline.application.services.retry_policy import RetryPolicy
from incident_pipeline.application.services.worker_pool import WorkerConfig, WorkerPoolDispatcher
from incident_pipeline.core.clock import SystemClock
from incident_pipeline.core.config.constants import Tier
from incident_pipeline.core.exceptions import HandlerNotRegisteredError
from incident_pipeline.jobs.models import JobOptions
from tests.test_fixtures import (
    FakeClock,
    FakeRedis,
    RecordingHandler,
    RecordingPersistence,
    build_manager,
    make_settings,
)

NOW = JobOptions(delay_ms=0)


def build_dispatcher(clock, settings, redis=None, config=None):
    manager = build_manager(clock, settings, redis=redis)
    dispatcher = WorkerPoolDispatcher(
        manager=manager,
        policies=settings.tier_policies,
        resilience=manager.resilience,
        clock=clock,
        retry_policy=RetryPolicy(jitter_ms=0),
        config=config or WorkerConfig.from_settings(settings),
    )
    return manager, dispatcher


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wired(clock):
    return build_dispatcher(clock, make_settings(), redis=FakeRedis())


@pytest.mark.unit
class TestHandlerRegistry:
    def test_missing_handler(self, wired):
        _, dispatcher = wired
        with pytest.raises(HandlerNotRegisteredError) as exc_info:
            dispatcher.handler_for(Tier.EMAIL)
        assert exc_info.value.details["tier"] == "Email"

    def test_register_replaces_pool(self, wired):
        _, dispatcher = wired
        first, second = RecordingHandler(), RecordingHandler()
        dispatcher.register_handler(Tier.EMAIL, first)
        pool = dispatcher.pool(Tier.EMAIL)

        dispatcher.register_handler("Email", second)
        assert dispatcher.handler_for(Tier.EMAIL) is second
        assert dispatcher.pool(Tier.EMAIL) is not pool


@pytest.mark.unit
class TestJobExecution:
    @pytest.mark.asyncio
    async def test_success_completes(self, wired):
        manager, dispatcher = wired
        handler = RecordingHandler()
        dispatcher.register_handler(Tier.STANDARD, handler)
        await manager.enqueue(Tier.STANDARD, {"report_id": "r1"}, NOW)

        assert await dispatcher.run_once(Tier.STANDARD) is True
        assert handler.calls[0].payload == {"report_id": "r1"}
        assert handler.calls[0].executions == 1
        assert dispatcher.get_stats()["Standard"]["completed"] == 1
        assert (await manager.get_queue_stats())["Standard"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_nothing_ready(self, wired):
        _, dispatcher = wired
        dispatcher.register_handler(Tier.STANDARD, RecordingHandler())
        assert await dispatcher.run_once(Tier.STANDARD) is False

    @pytest.mark.asyncio
    async def test_priority_order_across_run_once(self, wired):
        manager, dispatcher = wired
        handler = RecordingHandler()
        dispatcher.register_handler(Tier.STANDARD, handler)
        for job_id, priority in [("p3", 3), ("p1a", 1), ("p2", 2), ("p1b", 1)]:
            await manager.enqueue(Tier.STANDARD, {}, JobOptions(delay_ms=0, priority=priority, job_id=job_id))

        assert await dispatcher.drain(Tier.STANDARD) == 4
        assert [job.id for job in handler.calls] == ["p1a", "p1b", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_retry_then_success(self, wired, clock):
        manager, dispatcher = wired
        handler = RecordingHandler(fail_times=1)
        dispatcher.register_handler(Tier.STANDARD, handler)
        await manager.enqueue(Tier.STANDARD, {}, NOW)

        await dispatcher.run_once(Tier.STANDARD)
        assert await dispatcher.run_once(Tier.STANDARD) is False

        clock.advance(2)
        assert await dispatcher.run_once(Tier.STANDARD) is True
        stats = dispatcher.get_stats()["Standard"]
        assert (stats["retried"], stats["completed"], stats["dead_lettered"]) == (1, 1, 0)


@pytest.mark.unit
class TestRetryExhaustion:
    @pytest.mark.asyncio
    async def test_always_failing_job_is_dead_lettered_after_max_retries(self, wired, clock):
        manager, dispatcher = wired
        handler = RecordingHandler(fail_times=-1)
        dispatcher.register_handler(Tier.EMERGENCY, handler)
        result = await manager.enqueue(Tier.EMERGENCY, {"report_id": "r1"})
        max_retries = manager.policy(Tier.EMERGENCY).max_retries

        # Exponential backoff: 1s then 2s
        for wait_s in (0, 1, 2):
            clock.advance(wait_s)
            assert await dispatcher.run_once(Tier.EMERGENCY) is True
        assert await dispatcher.drain(Tier.EMERGENCY) == 0

        assert len(handler.calls) == max_retries + 1
        records = await manager.dead_letters.list()
        assert len(records) == 1
        assert records[0].job_id == result.job_id
        assert records[0].attempts_made == max_retries
        assert records[0].reason == "retries_exhausted"
        assert records[0].error == "RuntimeError: handler failed"

        stats = dispatcher.get_stats()["Emergency"]
        assert (stats["retried"], stats["dead_lettered"]) == (max_retries, 1)

    @pytest.mark.asyncio
    async def test_single_attempt_tier_dead_letters_immediately(self, wired):
        manager, dispatcher = wired
        dispatcher.register_handler(Tier.ANALYTICS, RecordingHandler(fail_times=-1))
        await manager.enqueue(Tier.ANALYTICS, {}, NOW)

        await dispatcher.run_once(Tier.ANALYTICS)
        records = await manager.dead_letters.list()
        assert records[0].attempts_made == 0


@pytest.mark.unit
class TestProcessingBudget:
    @pytest.mark.asyncio
    async def test_timeout_requeues_then_dead_letters_past_stall_allowance(self, clock):
        settings = make_settings(TIER_POLICY_OVERRIDES={"Emergency": {"max_processing_time_s": 0.05}})
        manager, dispatcher = build_dispatcher(clock, settings)
        handler = RecordingHandler(delay_s=1.0)
        dispatcher.register_handler(Tier.EMERGENCY, handler)
        await manager.enqueue(Tier.EMERGENCY, {})

        await dispatcher.run_once(Tier.EMERGENCY)
        assert dispatcher.get_stats()["Emergency"]["stalled"] == 1
        assert (await manager.get_queue_stats())["Emergency"]["waiting"] == 1

        await dispatcher.run_once(Tier.EMERGENCY)
        assert len(handler.calls) == 2
        records = await manager.dead_letters.list()
        assert records[0].reason == "stalled_limit"
        assert records[0].attempts_made == 0

    @pytest.mark.asyncio
    async def test_handler_timeout_error_is_an_ordinary_failure(self, wired, clock):
        manager, dispatcher = wired
        handler = RecordingHandler(fail_times=-1, error=TimeoutError("upstream socket timeout"))
        dispatcher.register_handler(Tier.EMERGENCY, handler)
        await manager.enqueue(Tier.EMERGENCY, {"report_id": "r1"})

        for wait_s in (0, 1, 2):
            clock.advance(wait_s)
            assert await dispatcher.run_once(Tier.EMERGENCY) is True
        assert await dispatcher.drain(Tier.EMERGENCY) == 0

        assert len(handler.calls) == 3
        stats = dispatcher.get_stats()["Emergency"]
        assert (stats["retried"], stats["stalled"], stats["dead_lettered"]) == (2, 0, 1)
        records = await manager.dead_letters.list()
        assert records[0].reason == "retries_exhausted"
        assert records[0].attempts_made == 2
        assert "upstream socket timeout" in records[0].error


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_processes_and_stop_drains(self):
        settings = make_settings(
            WORKER_POLL_INTERVAL_S=0.01,
            TIER_POLICY_OVERRIDES={"Email": {"concurrency": 2}},
        )
        manager, dispatcher = build_dispatcher(SystemClock(), settings)
        handler = RecordingHandler()
        dispatcher.register_handler(Tier.EMAIL, handler)

        await dispatcher.start()
        assert dispatcher.is_running
        assert set(dispatcher.get_stats()) == {"Email"}

        for i in range(3):
            await manager.enqueue(Tier.EMAIL, {"n": i}, NOW)
        for _ in range(100):
            if len(handler.calls) == 3:
                break
            await asyncio.sleep(0.01)

        await dispatcher.stop()
        assert len(handler.calls) == 3
        assert not dispatcher.is_running
        assert dispatcher.get_stats()["Email"]["running"] is False

    @pytest.mark.asyncio
    async def test_stop_cancels_hung_workers_after_timeout(self):
        settings = make_settings(
            WORKER_POLL_INTERVAL_S=0.01,
            TIER_POLICY_OVERRIDES={"Device": {"concurrency": 1}},
        )
        config = WorkerConfig(poll_interval_s=0.01, shutdown_timeout_s=0.05)
        manager, dispatcher = build_dispatcher(SystemClock(), settings, config=config)
        started = asyncio.Event()

        async def hang(job):
            started.set()
            await asyncio.Event().wait()

        dispatcher.register_handler(Tier.DEVICE, hang)
        await dispatcher.start()
        await manager.enqueue(Tier.DEVICE, {}, NOW)
        await asyncio.wait_for(started.wait(), timeout=2)

        await dispatcher.stop()
        assert not dispatcher.is_running
        # The job was never completed; it stays Active for the stalled sweep
        assert (await manager.get_queue_stats())["Device"]["active"] == 1


@pytest.mark.unit
class TestDuplicateDelivery:
    @pytest.mark.asyncio
    async def test_idempotent_handler_persists_one_outcome_per_job_id(self, wired):
        manager, dispatcher = wired
        persistence = RecordingPersistence()
        calls = []

        async def upsert(job):
            calls.append(job.id)
            if not await persistence.find({"job_id": job.id}):
                await persistence.save({"job_id": job.id, "status": "done"})

        dispatcher.register_handler(Tier.STANDARD, upsert)
        # Redelivery after completion, as when a lease expires after the handler wrote
        for _ in range(2):
            await manager.enqueue(Tier.STANDARD, {"report_id": "r-7"}, JobOptions(delay_ms=0, job_id="r-7"))
            assert await dispatcher.drain(Tier.STANDARD) == 1

        assert calls == ["r-7", "r-7"]
        assert await persistence.find({"job_id": "r-7"}) == [{"job_id": "r-7", "status": "done"}]
        assert dispatcher.get_stats()["Standard"]["completed"] == 2
