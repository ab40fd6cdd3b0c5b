#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
incident pipeline. Per-tier job policies, circuit-breaker thresholds, worker
tuning and classifier rules all live here so there is one canonical source.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Easy testing: construct ``Settings(...)`` with overrides and inject it
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from incident_pipeline.core.config.constants import (
    DEFAULT_SAFETY_KEYWORDS,
    DEFAULT_TIER_POLICIES,
    DEFAULT_VIOLENCE_KEYWORDS,
    BackoffType,
    QueueBackend,
    Tier,
)


class TierPolicy(BaseModel):
    """
    Per-tier job policy.

    ``attempts`` is the total number of executions a job may get, so a job
    is retried at most ``attempts - 1`` times.
    """

    priority: int = Field(ge=1, description="Default priority (lower = more urgent)")
    attempts: int = Field(ge=1, description="Total executions allowed")
    backoff_type: BackoffType = Field(description="Retry backoff strategy")
    backoff_delay_ms: int = Field(ge=0, description="Base backoff delay in ms")
    delay_ms: int = Field(default=0, ge=0, description="Default enqueue delay in ms")
    concurrency: int = Field(ge=1, description="Workers in this tier's pool")
    max_processing_time_s: float = Field(gt=0, description="Handler time budget")
    stalled_interval_s: float = Field(gt=0, description="Stalled-job sweep interval")
    max_stalled_count: int = Field(ge=0, description="Stalls tolerated before dead-letter")

    @property
    def max_retries(self) -> int:
        return self.attempts - 1


class HighPriorityZone(BaseModel):
    """Circular geographic zone whose reports are escalated to Emergency."""

    name: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius_m: float = Field(gt=0)


class RedisSettings(BaseSettings):
    """
    Redis configuration for the broker-backed queues.

    STAGE-0.1: Broker connection configuration
    """

    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")
    REDIS_KEY_PREFIX: str = Field(default="incidents", description="Namespace for all queue keys")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CircuitBreakerSettings(BaseSettings):
    """
    Circuit breaker configuration for the broker connection.

    STAGE-CB: Circuit breaker thresholds
    """

    CB_FAILURE_THRESHOLD: int = Field(default=5, description="Failures before opening circuit")
    CB_OPEN_TIMEOUT: float = Field(default=60.0, description="Seconds before a half-open trial")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class HealthSettings(BaseSettings):
    """Readiness gate thresholds."""

    HEALTH_READY_THRESHOLD: int = Field(default=30, description="Minimum health score to be ready")
    POOL_UTILIZATION_THRESHOLD: float = Field(
        default=85.0, description="Pool utilization (%) above which the gate closes"
    )
    POOL_MAX_CONNECTIONS: int = Field(default=50, description="Tracked connection slots")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class WorkerSettings(BaseSettings):
    """
    Worker pool tuning shared by every tier.

    STAGE-WP: Worker loop timing
    """

    WORKER_POLL_INTERVAL_S: float = Field(default=0.5, description="Sleep when a queue is empty")
    WORKER_ERROR_BACKOFF_S: float = Field(default=1.0, description="Sleep after a loop error")
    WORKER_GATE_BACKOFF_S: float = Field(default=1.0, description="Sleep while the readiness gate is closed")
    FALLBACK_PROMOTION_INTERVAL_S: float = Field(
        default=5.0, description="How often fallback jobs are promoted to the broker"
    )
    FALLBACK_MAX_SIZE: int = Field(default=10000, description="Fallback queue capacity per tier")
    SHUTDOWN_TIMEOUT_S: float = Field(default=10.0, description="Graceful shutdown timeout")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ClassifierSettings(BaseSettings):
    """Keyword lists and zones driving the classification cascade."""

    CLASSIFIER_VIOLENCE_KEYWORDS: list[str] = Field(default=list(DEFAULT_VIOLENCE_KEYWORDS))
    CLASSIFIER_SAFETY_KEYWORDS: list[str] = Field(default=list(DEFAULT_SAFETY_KEYWORDS))
    CLASSIFIER_HIGH_PRIORITY_ZONES: list[HighPriorityZone] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """General application settings."""

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="Incident Pipeline", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        settings = Settings()
        policy = settings.tier_policies[Tier.EMERGENCY]
        threshold = settings.circuit_breaker.CB_FAILURE_THRESHOLD
    """

    # Redis settings
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")
    REDIS_KEY_PREFIX: str = Field(default="incidents", description="Namespace for all queue keys")
    QUEUE_BACKEND: QueueBackend = Field(
        default=QueueBackend.BROKER, description="'memory' runs every tier on the in-process queue only"
    )

    # Circuit Breaker settings
    CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1, description="Failures before opening circuit")
    CB_OPEN_TIMEOUT: float = Field(default=60.0, gt=0, description="Seconds before a half-open trial")

    # Health / readiness settings
    HEALTH_READY_THRESHOLD: int = Field(default=30, ge=0, le=100, description="Minimum health score to be ready")
    POOL_UTILIZATION_THRESHOLD: float = Field(
        default=85.0, gt=0, le=100, description="Pool utilization (%) above which the gate closes"
    )
    POOL_MAX_CONNECTIONS: int = Field(default=50, ge=1, description="Tracked connection slots")

    # Worker settings
    WORKER_POLL_INTERVAL_S: float = Field(default=0.5, gt=0, description="Sleep when a queue is empty")
    WORKER_ERROR_BACKOFF_S: float = Field(default=1.0, ge=0, description="Sleep after a loop error")
    WORKER_GATE_BACKOFF_S: float = Field(default=1.0, ge=0, description="Sleep while the readiness gate is closed")
    FALLBACK_PROMOTION_INTERVAL_S: float = Field(
        default=5.0, gt=0, description="How often fallback jobs are promoted to the broker"
    )
    FALLBACK_MAX_SIZE: int = Field(default=10000, ge=1, description="Fallback queue capacity per tier")
    SHUTDOWN_TIMEOUT_S: float = Field(default=10.0, gt=0, description="Graceful shutdown timeout")

    # Classifier settings
    CLASSIFIER_VIOLENCE_KEYWORDS: list[str] = Field(default=list(DEFAULT_VIOLENCE_KEYWORDS))
    CLASSIFIER_SAFETY_KEYWORDS: list[str] = Field(default=list(DEFAULT_SAFETY_KEYWORDS))
    CLASSIFIER_HIGH_PRIORITY_ZONES: list[HighPriorityZone] = Field(default_factory=list)

    # Per-tier policy overrides, keyed by tier value, e.g.
    # TIER_POLICY_OVERRIDES='{"Emergency": {"concurrency": 40}}'
    TIER_POLICY_OVERRIDES: dict[str, dict[str, Any]] = Field(default_factory=dict)

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application settings
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="Incident Pipeline", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_tier_policies(self):
        """Every tier must resolve to a valid policy; unknown tiers are rejected."""
        known = {tier.value for tier in Tier}
        unknown = set(self.TIER_POLICY_OVERRIDES) - known
        if unknown:
            raise ValueError(f"TIER_POLICY_OVERRIDES has unknown tiers: {sorted(unknown)}")
        # Building the table validates every merged policy
        self._build_tier_policies()
        return self

    def _build_tier_policies(self) -> dict[Tier, TierPolicy]:
        policies = {}
        for tier in Tier:
            merged = {
                **DEFAULT_TIER_POLICIES[tier.value],
                **self.TIER_POLICY_OVERRIDES.get(tier.value, {}),
            }
            policies[tier] = TierPolicy(**merged)
        return policies

    @property
    def tier_policies(self) -> dict[Tier, TierPolicy]:
        """Resolved policy for every tier (defaults merged with overrides)."""
        return self._build_tier_policies()

    def tier_policy(self, tier: Tier) -> TierPolicy:
        return self.tier_policies[Tier(tier)]

    # Nested configuration objects
    @property
    def redis(self) -> 'RedisSettings':
        """Get Redis settings."""
        return RedisSettings(
            REDIS_HOST=self.REDIS_HOST,
            REDIS_PORT=self.REDIS_PORT,
            REDIS_DB=self.REDIS_DB,
            REDIS_PASSWORD=self.REDIS_PASSWORD,
            REDIS_MAX_CONNECTIONS=self.REDIS_MAX_CONNECTIONS,
            REDIS_SOCKET_TIMEOUT=self.REDIS_SOCKET_TIMEOUT,
            REDIS_SOCKET_CONNECT_TIMEOUT=self.REDIS_SOCKET_CONNECT_TIMEOUT,
            REDIS_HEALTH_CHECK_INTERVAL=self.REDIS_HEALTH_CHECK_INTERVAL,
            REDIS_KEY_PREFIX=self.REDIS_KEY_PREFIX,
        )

    @property
    def circuit_breaker(self) -> 'CircuitBreakerSettings':
        """Get circuit breaker settings."""
        return CircuitBreakerSettings(
            CB_FAILURE_THRESHOLD=self.CB_FAILURE_THRESHOLD,
            CB_OPEN_TIMEOUT=self.CB_OPEN_TIMEOUT,
        )

    @property
    def health(self) -> 'HealthSettings':
        """Get readiness gate settings."""
        return HealthSettings(
            HEALTH_READY_THRESHOLD=self.HEALTH_READY_THRESHOLD,
            POOL_UTILIZATION_THRESHOLD=self.POOL_UTILIZATION_THRESHOLD,
            POOL_MAX_CONNECTIONS=self.POOL_MAX_CONNECTIONS,
        )

    @property
    def workers(self) -> 'WorkerSettings':
        """Get worker settings."""
        return WorkerSettings(
            WORKER_POLL_INTERVAL_S=self.WORKER_POLL_INTERVAL_S,
            WORKER_ERROR_BACKOFF_S=self.WORKER_ERROR_BACKOFF_S,
            WORKER_GATE_BACKOFF_S=self.WORKER_GATE_BACKOFF_S,
            FALLBACK_PROMOTION_INTERVAL_S=self.FALLBACK_PROMOTION_INTERVAL_S,
            FALLBACK_MAX_SIZE=self.FALLBACK_MAX_SIZE,
            SHUTDOWN_TIMEOUT_S=self.SHUTDOWN_TIMEOUT_S,
        )

    @property
    def classifier(self) -> 'ClassifierSettings':
        """Get classifier settings."""
        return ClassifierSettings(
            CLASSIFIER_VIOLENCE_KEYWORDS=self.CLASSIFIER_VIOLENCE_KEYWORDS,
            CLASSIFIER_SAFETY_KEYWORDS=self.CLASSIFIER_SAFETY_KEYWORDS,
            CLASSIFIER_HIGH_PRIORITY_ZONES=self.CLASSIFIER_HIGH_PRIORITY_ZONES,
        )

    @property
    def logging(self) -> 'LoggingSettings':
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    @property
    def app(self) -> 'ApplicationSettings':
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
    )


# Bootstrap-only instance; components receive settings through constructors
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the process settings instance, creating it on first use.

    STAGE-0.3: Settings initialization
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
