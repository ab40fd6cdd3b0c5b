"""
Connection Pool Tracker for the Broker.

Counts broker connection slots held by in-flight operations so the readiness
gate can refuse new store-dependent work before the real pool is exhausted.

STAGE-CP: Connection Pool Tracking
----------------------------------
CP.1: Slot acquisition
CP.2: Slot release
CP.3: Health state
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any

from incident_pipeline.core.config.constants import (
    CONNECTION_POOL_CRITICAL_THRESHOLD,
    CONNECTION_POOL_DEGRADED_THRESHOLD,
)
from incident_pipeline.core.exceptions import ConnectionPoolExhaustedError
from incident_pipeline.core.logging.logger import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Connection pool health states."""

    HEALTHY = "healthy"          # < 70% capacity
    DEGRADED = "degraded"        # 70-85% capacity
    CRITICAL = "critical"        # 85-100% capacity
    EXHAUSTED = "exhausted"      # At 100% capacity


class ConnectionPoolTracker:
    """
    Process-wide broker connection slot counter.

    Slots are taken for the duration of one guarded broker operation through
    ``slot()``. Acquisition never waits: a full pool raises immediately.
    """

    def __init__(self, max_connections: int):
        self.max_connections = max_connections
        self._in_use = 0
        self._peak = 0
        self._lock = asyncio.Lock()

        self._degraded_threshold = int(max_connections * CONNECTION_POOL_DEGRADED_THRESHOLD)
        self._critical_threshold = int(max_connections * CONNECTION_POOL_CRITICAL_THRESHOLD)

        logger.info(
            "Connection pool tracker initialized",
            stage="CP.0",
            max_connections=max_connections,
            degraded_threshold=self._degraded_threshold,
            critical_threshold=self._critical_threshold,
        )

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def utilization(self) -> float:
        """Slots in use as a percentage of capacity."""
        if self.max_connections <= 0:
            return 0.0
        return (self._in_use / self.max_connections) * 100

    async def acquire(self) -> None:
        """
        Take one slot.

        STAGE-CP.1: Slot acquisition

        Raises:
            ConnectionPoolExhaustedError: every slot is in use
        """
        async with self._lock:
            if self._in_use >= self.max_connections:
                logger.error(
                    "Connection pool exhausted",
                    stage="CP.1.1",
                    in_use=self._in_use,
                    max_connections=self.max_connections,
                )
                raise ConnectionPoolExhaustedError(
                    details={"current": self._in_use, "max": self.max_connections}
                )
            self._in_use += 1
            self._peak = max(self._peak, self._in_use)

    async def release(self) -> None:
        """STAGE-CP.2: Slot release"""
        async with self._lock:
            self._in_use = max(0, self._in_use - 1)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            await self.release()

    def get_pool_state(self) -> ConnectionState:
        """STAGE-CP.3: Health state"""
        if self._in_use >= self.max_connections:
            return ConnectionState.EXHAUSTED
        elif self._in_use >= self._critical_threshold:
            return ConnectionState.CRITICAL
        elif self._in_use >= self._degraded_threshold:
            return ConnectionState.DEGRADED
        return ConnectionState.HEALTHY

    def get_stats(self) -> dict[str, Any]:
        return {
            "in_use": self._in_use,
            "peak": self._peak,
            "max_connections": self.max_connections,
            "utilization_percent": round(self.utilization, 2),
            "state": self.get_pool_state().value,
        }
