"""
Structured JSON logging.

One JSON object per line so the output can be filtered by field in
CloudWatch or any other log aggregator.

Usage:
    logger = get_logger(__name__)
    logger.info("Found user", extra={"extra_fields": {"user_id": "abc"}})
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from mailwatch.config import get_log_level


class JSONFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with JSON output on stderr.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(get_log_level())

    # Module reloads must not stack handlers
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)

    return logger
