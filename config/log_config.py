"""
config/log_config.py
Structured JSON logging shared by the API process and Celery workers.
"""

import json
import logging
import os
from logging import LogRecord

from config.settings import settings


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            log_data["request_id"] = request_id
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging(logger: logging.Logger = None) -> None:
    """Attach the JSON handler to the given logger (root by default)."""
    target = logger or logging.getLogger()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    target.handlers = [handler]
    target.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
