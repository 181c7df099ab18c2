"""Structured JSON logging configuration.

Provides centralized logging setup with request/sweep correlation and JSON
formatting. Lifecycle code passes context through `extra=` (group_id,
path, status, ...); the formatter copies the known keys into the JSON line.
"""

import logging
import json
import sys
from datetime import datetime, timezone

from .request_id import get_request_id, get_sweep_id

# extra= keys promoted into the JSON document
CONTEXT_FIELDS = (
    "group_id",
    "status",
    "path",
    "attempts",
    "recipient",
    "attachment_id",
    "artifact_id",
    "error",
)


class RequestIDFilter(logging.Filter):
    """Add request_id and sweep_id to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.sweep_id = get_sweep_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "no-request-id"),
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        sweep_id = getattr(record, "sweep_id", "-")
        if sweep_id != "-":
            log_data["sweep_id"] = sweep_id

        # Add exception info if present
        if record.exc_info:
            log_data["error"] = str(record.exc_info[1])
            log_data["traceback"] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            if field in log_data:
                continue
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = str(value)

        return json.dumps(log_data)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, use JSON formatter; otherwise use simple format
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(sweep_id)s - %(module)s.%(funcName)s - %(message)s'
        )

    handler.setFormatter(formatter)
    handler.addFilter(RequestIDFilter())
    root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.beat").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically get_logger(__name__))."""
    return logging.getLogger(name)
