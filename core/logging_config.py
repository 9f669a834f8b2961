# core/logging_config.py

import logging
import json
import os
from datetime import datetime, timezone
from typing import Optional

from core.request_context import get_request_id

# Standard LogRecord attributes that should not be copied into the JSON payload
_RESERVED = frozenset((
    "args", "msg", "levelname", "levelno",
    "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread",
    "threadName", "processName", "process",
    "taskName", "name", "message",
))


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None) or get_request_id(),
        }

        # Structured fields passed via `extra=`
        for key, value in record.__dict__.items():
            if key not in log_record and key not in _RESERVED:
                log_record[key] = value
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    # Prevent credentials in request URLs/headers from being logged by HTTP libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel((level or os.getenv("LLM_LOG_LEVEL", "INFO")).upper())
    root.handlers.clear()
    root.addHandler(handler)
