"""
Circuit Breaker for the Broker Connection.

In-process circuit breaker guarding every broker operation. State is never
persisted: a restarted process starts CLOSED and rebuilds its view from the
outcomes of new calls.

MECHANISM OF ACTION:
-------------------
- **CLOSED**: Operations proceed. Each failure increments
  ``consecutive_failures``; reaching ``failure_threshold`` opens the circuit
  and records ``last_failure_at``. A success resets the counter.

- **OPEN**: Every operation is rejected with ``CircuitOpenError`` without
  being attempted, until ``now - last_failure_at > open_timeout``. The next
  state read then moves the breaker to HALF_OPEN.

- **HALF_OPEN**: Exactly one trial is let through. Success closes the
  circuit; failure re-opens it with a fresh ``last_failure_at``. Callers that
  arrive while the trial is in flight are rejected.

All transitions are plain attribute updates on the event loop thread, so no
lock is needed.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any

from incident_pipeline.core.exceptions import CircuitOpenError
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.logging.logger import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Enumeration of possible circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


TransitionListener = Callable[[CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    Closed / Open / HalfOpen state machine.

    Usage:
        breaker.before_call()          # raises CircuitOpenError when rejected
        try:
            result = await operation()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        open_timeout: float,
        clock: Clock,
        on_transition: TransitionListener | None = None,
    ):
        self.name = name
        self._failure_threshold = failure_threshold
        self._open_timeout = open_timeout
        self._clock = clock
        self._on_transition = on_transition

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, applying the OPEN -> HALF_OPEN timeout transition."""
        if self._state is CircuitState.OPEN and self._open_timeout_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_failure_at(self) -> float | None:
        return self._last_failure_at

    @property
    def trial_in_flight(self) -> bool:
        return self._trial_in_flight

    def _open_timeout_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock.now() - self._last_failure_at > self._open_timeout

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        logger.info(
            f"Circuit '{self.name}' changed state to {new_state.value}",
            stage="CB.1",
            previous=previous.value,
            consecutive_failures=self._consecutive_failures,
        )
        if self._on_transition is not None:
            self._on_transition(previous, new_state)

    # ------------------------------------------------------------------
    # Call protocol
    # ------------------------------------------------------------------

    def before_call(self) -> None:
        """
        Admit or reject an operation.

        Raises:
            CircuitOpenError: circuit OPEN, or HALF_OPEN with the trial taken
        """
        state = self.state

        if state is CircuitState.CLOSED:
            return

        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            logger.info(f"Circuit '{self.name}' trial call allowed", stage="CB.2")
            return

        raise CircuitOpenError(
            f"Circuit open for {self.name}",
            details={
                "circuit": self.name,
                "state": state.value,
                "consecutive_failures": self._consecutive_failures,
            },
        )

    def record_success(self) -> None:
        self._trial_in_flight = False
        self._consecutive_failures = 0
        if self._state is not CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' recovered, closing", stage="CB.3")
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        was_trial = self._trial_in_flight
        self._trial_in_flight = False
        self._consecutive_failures += 1
        self._last_failure_at = self._clock.now()

        logger.warning(
            f"Circuit '{self.name}' recorded failure "
            f"({self._consecutive_failures}/{self._failure_threshold})",
            stage="CB.4",
        )

        if was_trial or self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self._failure_threshold
        ):
            logger.error(f"Circuit '{self.name}' tripped, opening", stage="CB.5")
            self._transition(CircuitState.OPEN)

    def abort_trial(self) -> None:
        """Give the half-open trial back when the call never reached the broker."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self._trial_in_flight = False
        self._consecutive_failures = 0
        self._last_failure_at = None
        self._transition(CircuitState.CLOSED)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self._failure_threshold,
            "open_timeout": self._open_timeout,
            "last_failure_at": self._last_failure_at,
        }
