"""Logging setup for the CLI and long-running ingestion workers.

Library modules only create ``logging.getLogger(__name__)`` loggers; this
module attaches a handler to the ``replygate`` logger with either a
human-readable or a JSON formatter.
"""

from __future__ import annotations

import json
import logging

from replygate.config import LoggingConfig


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when logging.json is enabled."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def configure_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Attach a stream handler to the package logger. Safe to call repeatedly."""
    config = config or LoggingConfig()
    logger = logging.getLogger("replygate")
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_replygate", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(_get_formatter(config.json))
    handler._replygate = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
