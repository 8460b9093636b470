"""Stdout logging setup driven by :class:`~audited_db.config.LoggingSettings`.

Library modules only ever call ``logging.getLogger(__name__)``; nothing is
configured on import.  Applications embedding the audited database call
:func:`configure_logging` once at startup.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from audited_db.config import LoggingSettings

_SIMPLE_FORMAT = "%(levelname)s %(message)s"
_DETAILED_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit newline-delimited JSON logs with stable core fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


def build_formatter(fmt: str) -> logging.Formatter:
    """Return the formatter for a ``logging.format`` setting value."""
    if fmt == "json":
        return JsonFormatter()
    if fmt == "simple":
        return logging.Formatter(_SIMPLE_FORMAT)
    return logging.Formatter(_DETAILED_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")


def configure_logging(settings: LoggingSettings) -> None:
    """Configure the ``audited_db`` logger tree with a single stdout handler.

    Idempotent: previously installed handlers on the package logger are
    replaced so repeated calls never duplicate output.
    """
    package_logger = logging.getLogger("audited_db")
    package_logger.handlers.clear()
    package_logger.setLevel(settings.level.upper())

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(build_formatter(settings.format))
    package_logger.addHandler(handler)
    package_logger.propagate = False
