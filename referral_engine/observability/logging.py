"""
Structured Logging with Structlog.

Provides JSON-formatted logs with correlation IDs and context.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from referral_engine.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "submission_verified",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "referral_engine.services.verification",
        "service": "social-referral-api",
        "version": "0.1.0",
        "workflow_id": "rescan-...",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
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
        logger.info("submission_verified", submission_id=submission_id, days_awarded=3)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(workflow_id="rescan-...", submission_id="..."):
            logger.info("workflow_step_started")
            # All logs within this context will include workflow_id and submission_id
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
