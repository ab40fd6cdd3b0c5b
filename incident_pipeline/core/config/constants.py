"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the incident pipeline.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for tiers and backoff strategies
- Per-tier defaults consolidated in one table (settings may override them)
"""

from enum import Enum

# ============================================================================
# Tiers
# ============================================================================


class Tier(str, Enum):
    """
    Priority class of a job.

    Every tier owns exactly one named queue and one worker pool. Routing code
    matches on all members explicitly; an unknown value is a programming error.
    """

    EMERGENCY = "Emergency"
    STANDARD = "Standard"
    BACKGROUND = "Background"
    ANALYTICS = "Analytics"
    EMAIL = "Email"
    DEVICE = "Device"

    @property
    def queue_name(self) -> str:
        """Name of the queue backing this tier (e.g. ``emergency``)."""
        return self.value.lower()


class BackoffType(str, Enum):
    """Retry backoff strategies."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class QueueBackend(str, Enum):
    """Where a job currently lives."""

    BROKER = "broker"
    MEMORY = "memory"


# ============================================================================
# Queue ordering
# ============================================================================

# score = priority * K + ready_at_ms; K exceeds any epoch-ms timestamp so the
# priority term always dominates.
PRIORITY_SCORE_MULTIPLIER = 10**13

# Cap applied to every computed retry backoff (ms)
MAX_RETRY_BACKOFF_MS = 300_000

# Upper bound of the random jitter added to exponential backoff (ms)
RETRY_JITTER_MS = 1000

# ============================================================================
# Per-tier defaults
# ============================================================================

# attempts = total executions allowed (first run included)
DEFAULT_TIER_POLICIES: dict[str, dict] = {
    Tier.EMERGENCY.value: {
        "priority": 1,
        "attempts": 3,
        "backoff_type": BackoffType.EXPONENTIAL.value,
        "backoff_delay_ms": 1000,
        "delay_ms": 0,
        "concurrency": 20,
        "max_processing_time_s": 30.0,
        "stalled_interval_s": 30.0,
        "max_stalled_count": 1,
    },
    Tier.STANDARD.value: {
        "priority": 2,
        "attempts": 2,
        "backoff_type": BackoffType.EXPONENTIAL.value,
        "backoff_delay_ms": 2000,
        "delay_ms": 1000,
        "concurrency": 15,
        "max_processing_time_s": 60.0,
        "stalled_interval_s": 60.0,
        "max_stalled_count": 2,
    },
    Tier.BACKGROUND.value: {
        "priority": 3,
        "attempts": 1,
        "backoff_type": BackoffType.FIXED.value,
        "backoff_delay_ms": 5000,
        "delay_ms": 5000,
        "concurrency": 8,
        "max_processing_time_s": 120.0,
        "stalled_interval_s": 120.0,
        "max_stalled_count": 3,
    },
    Tier.ANALYTICS.value: {
        "priority": 4,
        "attempts": 1,
        "backoff_type": BackoffType.FIXED.value,
        "backoff_delay_ms": 10000,
        "delay_ms": 30000,
        "concurrency": 3,
        "max_processing_time_s": 300.0,
        "stalled_interval_s": 300.0,
        "max_stalled_count": 1,
    },
    Tier.EMAIL.value: {
        "priority": 2,
        "attempts": 3,
        "backoff_type": BackoffType.EXPONENTIAL.value,
        "backoff_delay_ms": 5000,
        "delay_ms": 2000,
        "concurrency": 5,
        "max_processing_time_s": 90.0,
        "stalled_interval_s": 90.0,
        "max_stalled_count": 2,
    },
    Tier.DEVICE.value: {
        "priority": 3,
        "attempts": 2,
        "backoff_type": BackoffType.EXPONENTIAL.value,
        "backoff_delay_ms": 8000,
        "delay_ms": 10000,
        "concurrency": 6,
        "max_processing_time_s": 120.0,
        "stalled_interval_s": 120.0,
        "max_stalled_count": 2,
    },
}

# ============================================================================
# Connection health
# ============================================================================

HEALTH_SCORE_MAX = 100
HEALTH_SCORE_MIN = 0
HEALTH_SUCCESS_INCREMENT = 5
HEALTH_FAILURE_STEP = 5          # penalty = min(cap, step * consecutive_failures)
HEALTH_FAILURE_MAX_PENALTY = 20

# Pool utilization thresholds (fraction of capacity)
CONNECTION_POOL_DEGRADED_THRESHOLD = 0.70
CONNECTION_POOL_CRITICAL_THRESHOLD = 0.85

# ============================================================================
# Classification
# ============================================================================

REASON_SAFETY_FLAG = "explicit-safety-flag"
REASON_VIOLENCE_KEYWORD = "violence-keyword"
REASON_HIGH_PRIORITY_ZONE = "high-priority-zone"
REASON_SAFETY_KEYWORD = "safety-keyword"
REASON_DEFAULT = "default"
REASON_MALFORMED_INPUT = "malformed-input"

TAG_BACKGROUND_ENRICHMENT = "background-enrichment"

DEFAULT_VIOLENCE_KEYWORDS = (
    "assault",
    "attack",
    "weapon",
    "knife",
    "gun",
    "kidnap",
    "abduct",
    "rape",
    "stabbed",
    "beaten",
    "threatened to kill",
    "teen gang",
)

DEFAULT_SAFETY_KEYWORDS = (
    "followed",
    "stalking",
    "harassment",
    "eve teasing",
    "catcall",
    "inappropriate touch",
    "unsafe",
    "extortion",
    "chadabaji",
    "chintai",
)

# ============================================================================
# Queue health thresholds
# ============================================================================

QUEUE_FAILED_DEGRADED_THRESHOLD = 100
QUEUE_WAITING_STUCK_THRESHOLD = 50

# Exponential moving average weight for processing time
PROCESSING_TIME_EMA_ALPHA = 0.1

# Dead-letter reasons
DLQ_RETRIES_EXHAUSTED = "retries_exhausted"
DLQ_STALLED_LIMIT = "stalled_limit"
DLQ_REQUEUE_FAILED = "requeue_failed"
DLQ_PROMOTION_REQUEUE_FAILED = "promotion_requeue_failed"

# Fallback jobs moved back to the broker per tier per promotion pass
FALLBACK_PROMOTION_BATCH = 100

# The redundant Emergency copy becomes ready this long after the inline
# budget expires, so a worker never runs it while the inline run is live
DIRECT_PATH_COPY_GRACE_MS = 1000
