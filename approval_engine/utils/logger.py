"""Structured JSON Logging with Correlation ID Support"""
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar

from ..config.settings import settings
from .idgen import generate_correlation_id
from .time import utc_now, format_iso


# Correlation ID of the engine call currently being served
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Fields callers may pass through `extra=` that end up in the JSON line
EXTRA_FIELDS = (
    "instance_id",
    "step_index",
    "subject_id",
    "definition_id",
    "actor_id",
    "action",
    "status",
    "event_id",
    "round_id",
    "member_id",
    "server_id",
)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": format_iso(utc_now()),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            log_obj["correlation_id"] = correlation_id

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def setup_logging() -> None:
    """Setup logging configuration"""
    logs_path = settings.logs_path
    os.makedirs(logs_path, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    json_formatter = JsonFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(json_formatter)
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        os.path.join(logs_path, "approval_engine.log"),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8"
    )
    file_handler.setFormatter(json_formatter)
    root_logger.addHandler(file_handler)

    error_handler = RotatingFileHandler(
        os.path.join(logs_path, "error.log"),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8"
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    # Third-party noise
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from context"""
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation ID for the duration of an engine call

    An ID already bound by an outer call is kept, so nested calls share it.
    """
    current = correlation_id_var.get()
    if current and not correlation_id:
        yield current
        return

    token = correlation_id_var.set(correlation_id or generate_correlation_id())
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)
