"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .builders import build_manager
from .collaborators import (
    RecordingHandler,
    RecordingNotifier,
    RecordingOperator,
    RecordingPersistence,
)
from .fake_clock import FakeClock
from .fake_redis import FakeRedis
from .job_factory import NOW_MS, JobFactory, make_settings

__all__ = [
    "build_manager",
    "FakeClock",
    "FakeRedis",
    "JobFactory",
    "NOW_MS",
    "RecordingHandler",
    "RecordingNotifier",
    "RecordingOperator",
    "RecordingPersistence",
    "make_settings",
]
