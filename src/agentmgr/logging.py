"""
Structured logging for the agentmgr upgrade engine.

Log records are emitted as one JSON object per line so that unattended
upgrades can be audited after the fact. Modules obtain loggers through
``get_logger(__name__)`` and attach context (target, step, path) through the
``extra`` argument.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentmgr.config import LoggingConfig

ROOT_LOGGER_NAME = "agentmgr"

# Used when json_format is off
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_RESERVED_ATTRS = frozenset(
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
    Render each record as a single JSON line.

    Every line has ``timestamp`` (UTC, ISO 8601, taken from the record's
    creation time), ``level``, ``logger`` and ``message``. Failures add an
    ``exception`` traceback, and context passed through ``extra`` (target,
    step, path, ...) is copied in as top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and value is not None:
                entry[key] = value

        return json.dumps(entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Install the handler for everything logged under ``agentmgr``.

    Call it once at startup with the LoggingConfig from load_config(), or
    with the keyword arguments when no config is loaded. Calling it again
    replaces the previous handler.

    Example:
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Upgrade started", extra={"target": "web-console"})
    """
    if config is not None:
        log_level = "DEBUG" if config.debug_mode else config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()
    numeric_level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    if log_to_stdout:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(numeric_level)
        handler.setFormatter(
            JSONFormatter() if json_format else logging.Formatter(DEFAULT_LOG_FORMAT)
        )
        logger.addHandler(handler)

    # Upgrade records must not be duplicated by a host application's root handler.
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` under the ``agentmgr`` hierarchy."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
