"""
Clock Protocol

All timing (ready_at, backoff, circuit timeouts, stall detection) goes through
an injected clock so tests can drive time deterministically.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...

    def now_ms(self) -> int:
        """Milliseconds since the epoch."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...
