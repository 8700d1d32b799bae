"""Structured JSON logging for Herald."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Dynamically derive standard LogRecord attributes at module import time
# so future Python additions (like taskName) are never emitted as extras
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
) | {"message", "asctime"}

# Pipeline fields emitted first, in a stable order
_PIPELINE_FIELDS = ("event_id", "event_type", "job_id", "kind", "attempts", "status")


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _PIPELINE_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int) -> None:
    """Configure a logger with JSON formatting.

    Args:
        logger: The logger to configure.
        level: The logging level to set.
    """
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def get_logger(name: str = "herald") -> logging.Logger:
    """Get a logger in the ``herald`` tree.

    Handlers live on the ``herald`` logger (see ``configure_logging``);
    child loggers only carry a name and propagate to it.

    Args:
        name: The logger name. Defaults to "herald".
    """
    return logging.getLogger(name)


def configure_logging(level: int | str = logging.INFO, json_format: bool = True) -> logging.Logger:
    """Configure the ``herald`` logger tree for a worker process.

    Args:
        level: Logging level, as an int or a level name.
        json_format: Emit JSON lines when True, plain text otherwise.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("herald")
    if json_format:
        _setup_json_handler(logger, level)
    else:
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
            )
            logger.addHandler(handler)
        logger.setLevel(level)
        logger.propagate = False
    return logger
