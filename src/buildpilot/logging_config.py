"""
Centralized Logging Configuration with Structured Logging Support

Every module logs through ``logging.getLogger(__name__)`` under the
``buildpilot`` namespace. This module installs handlers on that namespace,
either plain text or JSON with a correlation ID (the job or session being
worked on).

Usage:
    from buildpilot.logging_config import configure_logging, correlation_id_var

    configure_logging(log_level="DEBUG")
    configure_logging(log_format="json")

    token = correlation_id_var.set("job_123")
    try:
        ...
    finally:
        correlation_id_var.reset(token)
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .config import Settings

LOGGER_NAME = "buildpilot"

# Job ID or session ID currently being processed
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with correlation ID for structured logging.

    Each log entry includes timestamp, level, logger name, message, correlation
    ID, and any extra fields added to the log record.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    stream=None,
) -> logging.Logger:
    """
    Configure logging for the ``buildpilot`` namespace.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "text" for human-readable lines, "json" for structured output
        stream: Output stream (defaults to stdout)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level.upper()))

    handler = logging.StreamHandler(stream or sys.stdout)
    if log_format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    logger.addHandler(handler)
    return logger


def configure_from_settings(settings: "Settings") -> logging.Logger:
    """Configure logging from application settings."""
    return configure_logging(log_level=settings.log_level, log_format=settings.log_format)
