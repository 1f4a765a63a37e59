"""
Logging setup for socks5relay.

Structured JSON lines on the console and, optionally, a rotating log file.
Every module logs through ``logging.getLogger(__name__)`` so the handlers
installed on the ``socks5relay`` logger see everything.
"""

import json
import logging
import logging.handlers
from typing import Any, Optional

ROOT_LOGGER = "socks5relay"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


class ContextFormatter(logging.Formatter):
    """One JSON object per record; ``record.context`` (passed via ``extra``) is nested as-is."""

    def format(self, record):
        context = getattr(record, "context", None)
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
            "context": context if isinstance(context, dict) else {},
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``socks5relay`` logger.

    Safe to call more than once; handlers from a previous call are replaced.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = ContextFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_with_context(
    logger: logging.Logger, message: str, level: str = "info", context: Optional[dict[str, Any]] = None
) -> None:
    """Log with additional structured context."""
    getattr(logger, level)(message, extra={"context": context or {}})
