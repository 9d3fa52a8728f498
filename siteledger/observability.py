"""
Structured logging for the reconciliation engine.

Each module logs through ``logging.getLogger(__name__)`` under the
``siteledger`` namespace and passes its context with ``extra=``. This module
only decides how those records are rendered.

Usage:
    from siteledger.observability import configure_logging

    configure_logging(level="DEBUG", json_output=True)
"""

import json
import logging
import sys
from datetime import datetime, UTC
from typing import Optional

from siteledger.config import get_settings

ROOT_LOGGER = "siteledger"

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter.

    Output format:
    {
        "timestamp": "2025-12-01T12:00:00.000000+00:00",
        "level": "INFO",
        "logger": "siteledger.rebuilder",
        "message": "Rebuild complete",
        "scope": "shop-1:site-a",
        "affected": 12
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter.

    Output format:
    2025-12-01 12:00:00 [INFO ] siteledger.rebuilder: Rebuild complete scope=shop-1:site-a affected=12
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} [{record.levelname:5}] {record.name}: {record.getMessage()}"

        fields = _extra_fields(record)
        if fields:
            msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> logging.Logger:
    """Attach a stream handler to the ``siteledger`` logger.

    Args:
        level: Log level name; defaults to ``Settings.log_level``
        json_output: Emit JSON lines; defaults to ``Settings.log_json``

    Returns:
        The configured package logger. Calling this again replaces the handler.
    """
    settings = get_settings()
    level = level or settings.log_level
    if json_output is None:
        json_output = settings.log_json

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter() if json_output else HumanReadableFormatter())
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger
