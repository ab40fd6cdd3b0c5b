"""
Redis Broker Connection with Connection Pooling

Owns the redis.asyncio client used by the broker-backed job queues and the
dead-letter store. Startup connection attempts are retried with tenacity;
after startup, failures are handled per command by the connection
resilience layer.
"""

from redis import asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, TimeoutError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from incident_pipeline.core.exceptions import BrokerUnavailableError
from incident_pipeline.core.logging.logger import get_logger

logger = get_logger(__name__)


class RedisConnection:
    """
    Manages Redis connection lifecycle and pooling.

    STAGE-REDIS: Broker connection

    Usage:
        connection = RedisConnection(settings)
        client = await connection.connect()
        ...
        await connection.disconnect()
    """

    def __init__(self, settings, connect_attempts: int = 3):
        self._settings = settings
        self._connect_attempts = connect_attempts
        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None
        self._is_connected = False

    async def connect(self) -> redis.Redis:
        """
        Establish connection to Redis with connection pooling.

        STAGE-REDIS.2: Connection establishment

        Raises:
            BrokerUnavailableError: If every connection attempt fails
        """
        if self._is_connected and self._client:
            return self._client

        redis_settings = self._settings.redis
        self._pool = ConnectionPool(
            host=redis_settings.REDIS_HOST,
            port=redis_settings.REDIS_PORT,
            db=redis_settings.REDIS_DB,
            password=redis_settings.REDIS_PASSWORD,
            max_connections=redis_settings.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=redis_settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=redis_settings.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
            health_check_interval=redis_settings.REDIS_HEALTH_CHECK_INTERVAL,
            decode_responses=True,  # Return strings instead of bytes
        )
        self._client = redis.Redis(connection_pool=self._pool)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._connect_attempts),
                wait=wait_exponential_jitter(initial=0.5, max=5.0),
                retry=retry_if_exception_type((ConnectionError, TimeoutError)),
                reraise=False,
            ):
                with attempt:
                    await self._client.ping()
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(
                "Failed to connect to Redis",
                stage="REDIS.2",
                error=str(cause),
                attempts=self._connect_attempts,
            )
            raise BrokerUnavailableError(
                f"Failed to connect to Redis: {cause}",
                details={
                    "host": redis_settings.REDIS_HOST,
                    "port": redis_settings.REDIS_PORT,
                },
            ) from cause

        self._is_connected = True
        logger.info(
            "Redis connected successfully",
            stage="REDIS.2",
            host=redis_settings.REDIS_HOST,
            port=redis_settings.REDIS_PORT,
            max_connections=redis_settings.REDIS_MAX_CONNECTIONS,
        )
        return self._client

    async def disconnect(self) -> None:
        """
        Close Redis connection and pool.

        STAGE-REDIS.3: Connection cleanup
        """
        if self._client:
            await self._client.aclose()

        if self._pool:
            await self._pool.disconnect()

        self._is_connected = False
        logger.info("Redis disconnected", stage="REDIS.3")

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise BrokerUnavailableError("Redis client used before connect()")
        return self._client

    def is_connected(self) -> bool:
        return self._is_connected
