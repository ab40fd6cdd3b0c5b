"""
Unit Tests for Logging Module

Tests logger creation, job context and the structlog processors.
"""

from unittest.mock import MagicMock

import pytest

from incident_pipeline.core.logging.logger import (
    add_job_id,
    add_log_level_name,
    clear_job_id,
    get_job_id,
    get_logger,
    log_stage,
    redact_pii,
    set_job_id,
)


@pytest.mark.unit
class TestLoggerCreation:
    def test_get_logger_returns_logger_instance(self):
        logger = get_logger(__name__)
        assert hasattr(logger, "info")


@pytest.mark.unit
class TestJobContext:
    def test_set_and_clear(self):
        set_job_id("job-123")
        assert get_job_id() == "job-123"
        clear_job_id()
        assert get_job_id() is None

    def test_job_id_injected(self):
        set_job_id("job-7")
        try:
            event = add_job_id(None, "info", {"event": "x"})
        finally:
            clear_job_id()
        assert event["job_id"] == "job-7"

    def test_explicit_job_id_wins(self):
        set_job_id("ctx")
        try:
            event = add_job_id(None, "info", {"event": "x", "job_id": "explicit"})
        finally:
            clear_job_id()
        assert event["job_id"] == "explicit"


@pytest.mark.unit
class TestProcessors:
    def test_redacts_email_and_phone(self):
        event = redact_pii(None, "info", {"event": "reporter a.b@example.com called 555-123-4567"})
        assert event["event"] == "reporter [EMAIL] called [PHONE]"

    def test_level_upper_cased(self):
        assert add_log_level_name(None, "info", {"level": "warning"})["level"] == "WARNING"


@pytest.mark.unit
class TestLogStage:
    def test_log_stage_calls_level_method(self):
        logger = MagicMock()
        log_stage(logger, "TQM.1", "Job enqueued", tier="Emergency")
        logger.info.assert_called_once_with("Job enqueued", stage="TQM.1", tier="Emergency")

    def test_log_stage_custom_level(self):
        logger = MagicMock()
        log_stage(logger, "WP.3", "failed", level="ERROR")
        logger.error.assert_called_once_with("failed", stage="WP.3")
