"""Logging configuration with JSON or text formatting.

Diagnostics always go to stderr so that command output (tables, diagrams)
on stdout stays clean:
- JSON-formatted records for log aggregation
- Human-readable text records for interactive use
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from vdc.config import settings


_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


class VdcJSONFormatter(logging.Formatter):
    """JSON log formatter.

    Formats log records as JSON objects with consistent fields:
    - timestamp: ISO8601 formatted timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - vdc: The datacenter the record concerns (if passed via ``extra``)
    - extra: Additional context fields
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "vdc-manager",
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra = {}
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)

        vdc_name = extra.pop("vdc", None)
        if vdc_name:
            log_entry["vdc"] = vdc_name
        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


class VdcTextFormatter(logging.Formatter):
    """Text log formatter for interactive use.

    [timestamp] LEVEL    logger: message
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as text."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        message = f"[{timestamp}] {record.levelname:8} {record.name}: {record.getMessage()}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger from settings.

    Args:
        level: Optional override for the configured log level
    """
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)

    if settings.log_format.lower() == "json":
        handler.setFormatter(VdcJSONFormatter())
    else:
        handler.setFormatter(VdcTextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
