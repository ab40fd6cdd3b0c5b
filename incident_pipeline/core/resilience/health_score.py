"""
Connection Health Score.

A smoothed 0-100 reliability signal for the broker, separate from the circuit
state. Isolated failures cost little; sustained failure costs more per call.

    success: score = min(100, score + 5)
    failure: score = max(0, score - min(20, 5 * consecutive_failures))
"""

from incident_pipeline.core.config.constants import (
    HEALTH_FAILURE_MAX_PENALTY,
    HEALTH_FAILURE_STEP,
    HEALTH_SCORE_MAX,
    HEALTH_SCORE_MIN,
    HEALTH_SUCCESS_INCREMENT,
)
from incident_pipeline.core.interfaces.clock import Clock


class HealthScore:
    def __init__(
        self,
        clock: Clock,
        success_increment: int = HEALTH_SUCCESS_INCREMENT,
        failure_step: int = HEALTH_FAILURE_STEP,
        max_penalty: int = HEALTH_FAILURE_MAX_PENALTY,
    ):
        self._clock = clock
        self._success_increment = success_increment
        self._failure_step = failure_step
        self._max_penalty = max_penalty

        self.score = HEALTH_SCORE_MAX
        self.consecutive_failures = 0
        self.last_success_at: float | None = None

    def record_success(self) -> None:
        self.score = min(HEALTH_SCORE_MAX, self.score + self._success_increment)
        self.consecutive_failures = 0
        self.last_success_at = self._clock.now()

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        penalty = min(self._max_penalty, self._failure_step * self.consecutive_failures)
        self.score = max(HEALTH_SCORE_MIN, self.score - penalty)

    def reset(self) -> None:
        self.score = HEALTH_SCORE_MAX
        self.consecutive_failures = 0
