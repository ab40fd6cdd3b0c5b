"""
Retry Policy

Backoff calculation for failed jobs, per tier.

Algorithm:
    - Exponential: delay = base_delay * 2^attempt + jitter
    - Fixed: delay = base_delay
    - Every delay is capped at MAX_RETRY_BACKOFF_MS (5 minutes)

The jitter source is injectable so retry timing is deterministic in tests.
"""

import random
from dataclasses import dataclass

from incident_pipeline.core.config.constants import (
    MAX_RETRY_BACKOFF_MS,
    RETRY_JITTER_MS,
    BackoffType,
)
from incident_pipeline.core.config.settings import TierPolicy
from incident_pipeline.jobs.models import Job


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a job whose handler just failed."""

    retry: bool
    delay_ms: int = 0

    @property
    def dead_letter(self) -> bool:
        return not self.retry


class RetryPolicy:
    """
    Computes backoff delays and retry decisions.

    Usage:
        policy = RetryPolicy(rng=random.Random(42))
        decision = policy.decide(job, tier_policy)
        if decision.retry:
            job.ready_at = now_ms + decision.delay_ms
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        jitter_ms: int = RETRY_JITTER_MS,
        max_backoff_ms: int = MAX_RETRY_BACKOFF_MS,
    ):
        self._rng = rng or random.Random()
        self._jitter_ms = jitter_ms
        self._max_backoff_ms = max_backoff_ms

    def compute_backoff_ms(self, policy: TierPolicy, attempt: int) -> int:
        """
        Calculate the delay before the next execution.

        Args:
            policy: Tier policy (backoff type and base delay)
            attempt: Retries already consumed (0 for the first retry)

        Returns:
            Delay in milliseconds

        Example:
            base=1000ms, exponential, jitter=0
            attempt=0: 1000ms
            attempt=1: 2000ms
            attempt=2: 4000ms
            attempt=9: 300000ms (capped)
        """
        if policy.backoff_type is BackoffType.FIXED:
            delay = policy.backoff_delay_ms
        else:
            jitter = self._rng.randint(0, self._jitter_ms) if self._jitter_ms > 0 else 0
            delay = policy.backoff_delay_ms * (2 ** attempt) + jitter
        return min(delay, self._max_backoff_ms)

    def decide(self, job: Job, policy: TierPolicy) -> RetryDecision:
        """Retry while ``retries_remaining > 0``; otherwise dead-letter."""
        if job.retries_remaining <= 0:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_ms=self.compute_backoff_ms(policy, job.attempts_made))
