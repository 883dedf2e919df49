"""
logging.py - Log Setup for the Ledger

Modules log through get_logger(__name__). Settlement calls attach their
identifiers with extra={"extra": {...}}; JsonFormatter lifts those fields
into the JSON line, the standard formatter leaves them out.

    config = LedgerConfig.from_env()
    config.configure_logging()
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

PACKAGE_LOGGER = "loan_ledger"
STANDARD_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def build_formatter(format_type: str) -> logging.Formatter:
    if format_type == "json":
        return JsonFormatter()
    return logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    level: str = "INFO",
    format_type: str = "standard",
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Route log records to one stream handler (stdout unless given).

    Replaces the root logger's handlers, so repeated calls leave exactly one.
    Unknown level names fall back to INFO.

    Returns:
        The installed handler
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(build_formatter(format_type))

    root = logging.getLogger()
    root.setLevel(log_level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    logging.getLogger(PACKAGE_LOGGER).setLevel(log_level)
    return handler


class JsonFormatter(logging.Formatter):
    """One JSON object per record. Decimals and dates in extra fields are written as strings."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            entry.update(fields)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
