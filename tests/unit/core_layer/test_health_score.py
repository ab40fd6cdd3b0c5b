"""
Unit Tests for the Connection Health Score
"""

import pytest

from incident_pipeline.core.resilience.health_score import HealthScore
from tests.test_fixtures import FakeClock


@pytest.mark.unit
class TestHealthScore:
    def test_starts_at_max(self):
        assert HealthScore(FakeClock()).score == 100

    def test_failure_penalty_grows_with_consecutive_failures(self):
        health = HealthScore(FakeClock())

        health.record_failure()
        assert health.score == 95
        health.record_failure()
        assert health.score == 85
        health.record_failure()
        assert health.score == 70

    def test_penalty_is_capped(self):
        health = HealthScore(FakeClock())
        for _ in range(5):
            health.record_failure()
        # 5 + 10 + 15 + 20 + 20
        assert health.score == 30

    def test_three_failures_score_lower_than_one(self):
        one = HealthScore(FakeClock())
        one.record_failure()
        three = HealthScore(FakeClock())
        for _ in range(3):
            three.record_failure()

        assert three.score < one.score

    def test_never_below_zero(self):
        health = HealthScore(FakeClock())
        for _ in range(20):
            health.record_failure()
        assert health.score == 0

    def test_success_recovers_and_resets_streak(self):
        clock = FakeClock()
        health = HealthScore(clock)
        health.record_failure()
        health.record_failure()
        health.record_success()

        assert health.score == 90
        assert health.consecutive_failures == 0
        assert health.last_success_at == clock.now()

        health.record_failure()
        assert health.score == 85

    def test_success_capped_at_max(self):
        health = HealthScore(FakeClock())
        health.record_success()
        assert health.score == 100
