"""
Dead-Letter Store

Durable record of jobs that exhausted their retries or stall allowance.
Records are pushed to a Redis list through the connection resilience layer.
While the broker is unavailable they are held in a process-local buffer and
flushed on the next successful write. Records are never reprocessed
automatically.
"""

from redis import asyncio as redis

from incident_pipeline.core.exceptions import (
    BrokerUnavailableError,
    CircuitOpenError,
    ConnectionPoolExhaustedError,
)
from incident_pipeline.core.logging.logger import get_logger
from incident_pipeline.core.resilience.connection_resilience import ConnectionResilience
from incident_pipeline.jobs.models import DeadLetterRecord

logger = get_logger(__name__)

_UNAVAILABLE = (BrokerUnavailableError, CircuitOpenError, ConnectionPoolExhaustedError)


class DeadLetterStore:
    def __init__(
        self,
        resilience: ConnectionResilience,
        client: redis.Redis | None = None,
        prefix: str = "incidents",
    ):
        self._resilience = resilience
        self._redis = client
        self._key = f"{prefix}:dead_letter"
        self._buffer: list[DeadLetterRecord] = []

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def add(self, record: DeadLetterRecord) -> None:
        """Persist a record; buffers it locally if the broker is unavailable."""
        if self._redis is None:
            self._buffer.append(record)
            return

        await self.flush()
        if self._buffer:
            # Still unavailable; keep arrival order
            self._buffer.append(record)
            return

        try:
            await self._resilience.call(
                lambda: self._redis.lpush(self._key, record.to_json()),
                op_name="dead_letter_push",
            )
        except _UNAVAILABLE as e:
            logger.warning(
                "Dead-letter write deferred, broker unavailable",
                stage="DLQ.1",
                job_id=record.job_id,
                error_type=type(e).__name__,
            )
            self._buffer.append(record)

    async def flush(self) -> int:
        """Write buffered records to the broker. Returns how many were written."""
        if self._redis is None or not self._buffer:
            return 0

        written = 0
        while self._buffer:
            record = self._buffer[0]
            try:
                await self._resilience.call(
                    lambda: self._redis.lpush(self._key, record.to_json()),
                    op_name="dead_letter_flush",
                )
            except _UNAVAILABLE:
                break
            self._buffer.pop(0)
            written += 1

        if written:
            logger.info("Flushed buffered dead-letter records", stage="DLQ.2", count=written)
        return written

    async def list(self, limit: int = 100) -> list[DeadLetterRecord]:
        """Newest first; buffered (not yet written) records come first."""
        records = list(reversed(self._buffer))[:limit]
        if self._redis is None or len(records) >= limit:
            return records
        try:
            raw = await self._resilience.call(
                lambda: self._redis.lrange(self._key, 0, limit - len(records) - 1),
                op_name="dead_letter_list",
            )
        except _UNAVAILABLE:
            return records
        return records + [DeadLetterRecord.from_json(item) for item in raw]

    async def count(self) -> int:
        if self._redis is None:
            return len(self._buffer)
        try:
            stored = await self._resilience.call(
                lambda: self._redis.llen(self._key), op_name="dead_letter_count"
            )
        except _UNAVAILABLE:
            stored = 0
        return int(stored) + len(self._buffer)
