"""Core utilities package."""

from .logging import LoggerAdapter, get_logger, get_logger_with_context, setup_logging

__all__ = [
    "setup_logging",
    "get_logger",
    "LoggerAdapter",
    "get_logger_with_context",
]
