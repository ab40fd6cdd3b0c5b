"""Configuration: settings and constants."""

from incident_pipeline.core.config.constants import BackoffType, QueueBackend, Tier
from incident_pipeline.core.config.settings import (
    HighPriorityZone,
    Settings,
    TierPolicy,
    get_settings,
    reload_settings,
)

__all__ = [
    "BackoffType",
    "HighPriorityZone",
    "QueueBackend",
    "Settings",
    "Tier",
    "TierPolicy",
    "get_settings",
    "reload_settings",
]
