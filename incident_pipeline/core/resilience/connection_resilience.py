"""
Connection Resilience Layer.

Single process-wide guard in front of the broker. Every broker command goes
through ``ConnectionResilience.call`` which:

1. takes a connection slot (pool utilization tracking),
2. asks the circuit breaker for admission (fail fast when open),
3. runs the operation,
4. feeds the outcome to the breaker and the health score.

The readiness gate (``is_ready``) combines circuit state, health score and
pool utilization. The queue manager and worker pools consult it before doing
store-dependent work. Observers subscribe explicitly for state changes;
``get_health_status`` offers the same information for polling.

STAGE-CR: Connection resilience
-------------------------------
CR.1: Guarded call
CR.2: Readiness evaluation
CR.3: Observer notification
CR.4: Health probe
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.exceptions import RedisError

from incident_pipeline.core.exceptions import (
    BrokerUnavailableError,
    CircuitOpenError,
    ConnectionPoolExhaustedError,
)
from incident_pipeline.core.interfaces.clock import Clock
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.core.resilience.circuit_breaker import CircuitBreaker, CircuitState
from incident_pipeline.core.resilience.connection_pool import ConnectionPoolTracker
from incident_pipeline.core.resilience.health_score import HealthScore
from incident_pipeline.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

T = TypeVar("T")

# Errors that mean "the broker could not serve this command"
BROKER_ERRORS = (RedisError, OSError, asyncio.TimeoutError, BrokerUnavailableError)


@dataclass(frozen=True)
class Readiness:
    ready: bool
    reason: str | None = None


@dataclass(frozen=True)
class ConnectionHealth:
    """Point-in-time view of the broker connection."""

    circuit_state: CircuitState
    consecutive_failures: int
    health_score: int
    last_success_at: float | None
    pool_utilization: float
    ready: bool
    reason: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "circuit_state": self.circuit_state.value,
            "consecutive_failures": self.consecutive_failures,
            "health_score": self.health_score,
            "last_success_at": self.last_success_at,
            "pool_utilization": round(self.pool_utilization, 2),
            "ready": self.ready,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class HealthEvent:
    """Delivered to subscribers on every circuit transition."""

    previous: CircuitState
    current: CircuitState
    health: ConnectionHealth

    @property
    def connection_lost(self) -> bool:
        return self.current is CircuitState.OPEN

    @property
    def connection_restored(self) -> bool:
        return self.current is CircuitState.CLOSED


HealthListener = Callable[[HealthEvent], None]


class ConnectionResilience:
    """
    Circuit breaker + health score + pool tracker behind one facade.

    Usage:
        resilience = ConnectionResilience(clock=SystemClock(), ...)
        await resilience.call(lambda: redis.zadd(key, mapping))
        readiness = resilience.is_ready()
    """

    def __init__(
        self,
        clock: Clock,
        failure_threshold: int = 5,
        open_timeout: float = 60.0,
        health_threshold: int = 30,
        pool_utilization_threshold: float = 85.0,
        max_connections: int = 50,
        metrics: MetricsCollector | None = None,
        name: str = "broker",
    ):
        self._clock = clock
        self._health_threshold = health_threshold
        self._pool_threshold = pool_utilization_threshold
        self._metrics = metrics
        self._listeners: list[HealthListener] = []

        self.breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            open_timeout=open_timeout,
            clock=clock,
            on_transition=self._on_circuit_transition,
        )
        self.health = HealthScore(clock)
        self.pool = ConnectionPoolTracker(max_connections)

    @classmethod
    def from_settings(cls, settings, clock: Clock, metrics: MetricsCollector | None = None) -> "ConnectionResilience":
        return cls(
            clock=clock,
            failure_threshold=settings.circuit_breaker.CB_FAILURE_THRESHOLD,
            open_timeout=settings.circuit_breaker.CB_OPEN_TIMEOUT,
            health_threshold=settings.health.HEALTH_READY_THRESHOLD,
            pool_utilization_threshold=settings.health.POOL_UTILIZATION_THRESHOLD,
            max_connections=settings.health.POOL_MAX_CONNECTIONS,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Guarded calls
    # ------------------------------------------------------------------

    async def call(self, operation: Callable[[], Awaitable[T]], *, op_name: str = "broker_op") -> T:
        """
        Run one broker operation under the breaker.

        STAGE-CR.1: Guarded call

        Raises:
            CircuitOpenError: rejected without attempting the operation
            ConnectionPoolExhaustedError: no free connection slot
            BrokerUnavailableError: the broker command failed
        """
        async with self.pool.slot():
            self.breaker.before_call()
            try:
                result = await operation()
            except asyncio.CancelledError:
                self.breaker.abort_trial()
                raise
            except BROKER_ERRORS as e:
                self._record_failure(op_name, e)
                if isinstance(e, BrokerUnavailableError):
                    raise
                raise BrokerUnavailableError.from_exception(e, op=op_name) from e
            except Exception as e:
                self._record_failure(op_name, e)
                raise
            self._record_success()
            return result

    def _record_success(self) -> None:
        self.breaker.record_success()
        self.health.record_success()
        if self._metrics:
            self._metrics.set_health_score(self.health.score)

    def _record_failure(self, op_name: str, error: BaseException) -> None:
        self.health.record_failure()
        self.breaker.record_failure()
        logger.warning(
            "Broker operation failed",
            stage="CR.1.1",
            op=op_name,
            error=str(error),
            error_type=type(error).__name__,
            health_score=self.health.score,
        )
        if self._metrics:
            self._metrics.set_health_score(self.health.score)

    async def probe(self, ping: Callable[[], Awaitable[Any]]) -> bool:
        """
        Health probe used while the gate is closed so the score can recover.

        STAGE-CR.4: Health probe
        """
        try:
            await self.call(ping, op_name="probe")
        except (CircuitOpenError, ConnectionPoolExhaustedError, BrokerUnavailableError) as e:
            logger.debug("Broker probe failed", stage="CR.4", error_type=type(e).__name__)
            return False
        return True

    # ------------------------------------------------------------------
    # Readiness gate
    # ------------------------------------------------------------------

    def is_ready(self) -> Readiness:
        """
        STAGE-CR.2: Readiness evaluation

        Not ready when the circuit is open, a half-open trial is in flight,
        the health score is below threshold, or pool utilization is above
        threshold.
        """
        state = self.breaker.state
        if state is CircuitState.OPEN:
            return Readiness(False, "circuit_open")
        if state is CircuitState.HALF_OPEN and self.breaker.trial_in_flight:
            return Readiness(False, "half_open_trial_in_flight")
        if self.health.score < self._health_threshold:
            return Readiness(False, "health_score_low")
        if self.pool.utilization > self._pool_threshold:
            return Readiness(False, "pool_saturated")
        return Readiness(True)

    def get_health_status(self) -> ConnectionHealth:
        readiness = self.is_ready()
        return ConnectionHealth(
            circuit_state=self.breaker.state,
            consecutive_failures=self.breaker.consecutive_failures,
            health_score=self.health.score,
            last_success_at=self.health.last_success_at,
            pool_utilization=self.pool.utilization,
            ready=readiness.ready,
            reason=readiness.reason,
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: HealthListener) -> Callable[[], None]:
        """
        Register a listener for circuit transitions.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_circuit_transition(self, previous: CircuitState, current: CircuitState) -> None:
        """STAGE-CR.3: Observer notification"""
        if self._metrics:
            self._metrics.set_circuit_state(self.breaker.name, current.value)

        if not self._listeners:
            return

        health = ConnectionHealth(
            circuit_state=current,
            consecutive_failures=self.breaker.consecutive_failures,
            health_score=self.health.score,
            last_success_at=self.health.last_success_at,
            pool_utilization=self.pool.utilization,
            ready=current is not CircuitState.OPEN,
            reason="circuit_open" if current is CircuitState.OPEN else None,
        )
        event = HealthEvent(previous=previous, current=current, health=health)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "Health listener raised",
                    stage="CR.3.ERROR",
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(e),
                    exc_info=True,
                )
