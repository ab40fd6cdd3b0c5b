#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging with:
- Job ID correlation across queue, worker and direct-path logs
- Stage identifiers for execution flow (CB.*, TQM.*, WP.*, EDP.*, CLS.*, Q.*)
- JSON formatting for log aggregation
- Automatic PII redaction (reports carry reporter contact details)
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variable for the job currently being handled
job_id_ctx: ContextVar[str | None] = ContextVar("job_id", default=None)

_EMAIL_RE = re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b")
_PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")


def add_job_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add job ID to log event from context variable.

    STAGE-L.1: Job ID injection
    """
    job_id = job_id_ctx.get()
    if job_id and "job_id" not in event_dict:
        event_dict["job_id"] = job_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_pii(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact PII from log messages.

    STAGE-L.3: PII redaction

    Patterns redacted:
    - Email addresses → [EMAIL]
    - Phone numbers → [PHONE]
    """
    message = event_dict.get("event", "")

    if isinstance(message, str):
        message = _EMAIL_RE.sub("[EMAIL]", message)
        message = _PHONE_RE.sub("[PHONE]", message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add log level name to event dict.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # Merge context variables
            add_job_id,  # Add job ID from context
            add_timestamp,  # Add ISO timestamp
            structlog.stdlib.add_log_level,  # Add log level
            add_log_level_name,  # Convert log level to uppercase
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_pii,  # Redact PII
            renderer,  # JSON or console renderer
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message", key="value", stage="TQM.1")
    """
    return structlog.get_logger(name)


def set_job_id(job_id: str) -> None:
    """Bind a job ID to the current task's log context."""
    job_id_ctx.set(job_id)


def get_job_id() -> str | None:
    return job_id_ctx.get()


def clear_job_id() -> None:
    job_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Usage:
        log_stage(logger, "WP.3", "Job completed", tier="Emergency")
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
