"""Logging setup for processes that host the lifecycle engine.

Log records are rendered as one JSON object per line. Context such as
``order_id`` or ``prescription_id`` can be attached with ``extra=`` and is
copied to the top level of the object.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone
from typing import Optional

CONTEXT_FIELDS = ("order_id", "prescription_id", "event")


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_record[name] = getattr(record, name)
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None, json_format: bool = True) -> None:
    """Configure the root logger.

    Args:
        level: Level name for the root logger.
        log_dir: When given, also write to ``<log_dir>/rx_lifecycle.log``
            through a rotating file handler.  The directory is created if
            needed.
        json_format: Use :class:`JsonFormatter`; otherwise a plain one-line
            text format.
    """
    logger = logging.getLogger()
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "rx_lifecycle.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB per log file
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
