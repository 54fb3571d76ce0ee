"""Logging configuration for the vArmor policy controller."""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from varmor.core.config import LogLevel, Settings, get_settings

CONTEXT_FIELDS = ("scope", "key", "namespace", "name", "handler", "profile")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that carries controller context fields."""

    def __init__(self, *args, app_name: str = "", app_version: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self.app_name = app_name
        self.app_version = app_version

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["app_name"] = self.app_name
        log_record["app_version"] = self.app_version
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure logging for the controller."""
    settings = settings or get_settings()
    level = LogLevel.DEBUG.value if settings.debug else settings.log_level.value

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if settings.log_json:
        formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            app_name=settings.app_name,
            app_version=settings.app_version,
        )
    else:
        formatter = logging.Formatter(settings.log_format)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set log levels for third-party libraries
    logging.getLogger("kopf").setLevel(logging.INFO)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger = get_logger(__name__)
    logger.info(
        "Logging configured",
        extra={
            "log_level": level,
            "log_json": settings.log_json,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with their context.

    Context is attached to every record as ``extra`` fields (picked up by the
    JSON formatter) and rendered as ``key=value`` pairs for the plain one.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(self.extra)
        if "extra" in kwargs:
            extra.update(kwargs["extra"])
        kwargs["extra"] = extra

        if self.extra:
            prefix = " ".join(f"{k}={v}" for k, v in self.extra.items())
            msg = f"[{prefix}] {msg}"

        return msg, kwargs

    def with_context(self, **context) -> "LoggerAdapter":
        """Derive an adapter with additional context fields."""
        return LoggerAdapter(self.logger, {**self.extra, **context})


def get_logger_with_context(name: str, **context) -> LoggerAdapter:
    """Get a logger with additional context."""
    logger = get_logger(name)
    return LoggerAdapter(logger, context)
