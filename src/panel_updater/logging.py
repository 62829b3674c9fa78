"""
Structured logging for the panel updater.

Log records are emitted as one JSON object per line so that the server-side
record of an update (including the raw errors the observer never sees) can
be collected by pm2 or journald and parsed afterwards.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from panel_updater.config import LoggingConfig

ROOT_LOGGER_NAME = "panel_updater"

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in via ``extra=``.
_RESERVED_RECORD_KEYS = frozenset(
    {
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
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each record carries ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``
    and ``message``, plus ``exception`` when exc_info is set and every field
    passed through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        config: Optional LoggingConfig. When provided it overrides the
            keyword arguments.
        level: Log level used when no config is provided.
        json_format: Whether to use JSON formatting.
        log_to_stdout: Whether to attach a stream handler.
        stream: Stream for the handler; defaults to stdout. The CLI passes
            stderr so that log lines stay out of its own output.

    Returns:
        The ``panel_updater`` root logger.

    Example:
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Updater started", extra={"root": "/opt/panel"})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    logger.handlers.clear()

    if log_to_stdout:
        handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
        handler.setLevel(getattr(logging, log_level, logging.INFO))

        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

        logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger of the package logger.

    Args:
        name: Usually ``__name__`` of the calling module. The
            ``panel_updater.`` prefix is added when missing.

    Returns:
        A logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
