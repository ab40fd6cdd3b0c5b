"""Redis broker connection."""

from incident_pipeline.infrastructure.broker.redis_client import RedisConnection

__all__ = ["RedisConnection"]
