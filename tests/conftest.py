"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import os
import random
import sys

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from incident_pipeline.application.container import build_pipeline  # noqa: E402
from tests.test_fixtures import (  # noqa: E402
    FakeClock,
    RecordingNotifier,
    RecordingOperator,
    RecordingPersistence,
    make_settings,
)

# pytest-asyncio is loaded via the pyproject.toml configuration (strict mode)


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def settings():
    """Default settings, isolated from the environment's .env file."""
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def persistence():
    return RecordingPersistence()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def operator():
    return RecordingOperator()


@pytest.fixture
def pipeline_factory(clock, persistence, notifier, operator):
    """
    Build a fully wired pipeline on the fake clock.

    Pass ``redis_client`` to run with a broker, and settings overrides as
    keyword arguments.
    """

    def factory(redis_client=None, persistence_override=None, **overrides):
        return build_pipeline(
            make_settings(**overrides),
            persistence=persistence_override or persistence,
            operator=operator,
            notifier=notifier,
            clock=clock,
            redis_client=redis_client,
            rng=random.Random(7),
        )

    return factory


# ============================================================================
# Environment-Based Integration Toggles
# ============================================================================


@pytest.fixture(scope="session")
def use_real_redis():
    """Check if real Redis should be used for integration tests."""
    return os.getenv("USE_REAL_REDIS", "0").lower() in ("1", "true", "yes")
