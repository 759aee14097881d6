"""Logging setup driven by ``LoggingSettings``.

Supports a single-line JSON format (default) and a plain text format, with an
optional log file next to the console handler.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from .config import LoggingSettings, settings

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(config: LoggingSettings | None = None) -> None:
    """Configure the root logger. Safe to call more than once."""
    config = config or settings.logging

    formatter: logging.Formatter
    if config.format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(config.level.upper())

    # SQL echo is controlled by DB_ECHO, not by the app log level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
