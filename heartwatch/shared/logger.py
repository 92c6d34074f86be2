"""Structured JSON logging for Heartwatch components."""

import json
import logging
from datetime import datetime, timezone

_settings: dict = {"level": logging.INFO, "handler": None}


class JsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": record.name.replace("heartwatch.", ""),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if hasattr(record, "log_data"):
            entry["data"] = record.log_data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _build_handler(log_file: str | None) -> logging.Handler:
    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    return handler


def get_logger(
    name: str,
    log_file: str | None = None,
    level: int | None = None,
) -> logging.Logger:
    """Return a named logger that emits structured JSON.

    Args:
        name: Short component name (e.g. "monitor", "alerts").
        log_file: Optional path; writes JSON lines to this file instead of stderr.
        level: Logging level. Defaults to the level set by ``configure_logging``
            (INFO until it is called).

    Returns:
        A ``logging.Logger`` instance named ``heartwatch.<name>``.
    """
    logger = logging.getLogger(f"heartwatch.{name}")
    logger.setLevel(level if level is not None else _settings["level"])

    if not logger.handlers:
        if log_file or _settings["handler"] is None:
            logger.addHandler(_build_handler(log_file))
        else:
            logger.addHandler(_settings["handler"])

    return logger


def configure_logging(level: int = logging.INFO, log_file: str | None = None):
    """Send every ``heartwatch.*`` logger, existing and future, to one destination at ``level``."""
    previous = _settings["handler"]
    handler = _build_handler(log_file)
    _settings["level"] = level
    _settings["handler"] = handler

    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if not name.startswith("heartwatch.") or not isinstance(logger, logging.Logger):
            continue
        logger.setLevel(level)
        for old in list(logger.handlers):
            logger.removeHandler(old)
            if old is not previous:
                old.close()
        logger.addHandler(handler)

    if previous is not None:
        previous.close()
