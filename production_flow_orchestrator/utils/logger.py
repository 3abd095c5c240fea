"""
Logging utilities for Production Flow Orchestrator

Provides structured logging configuration and utilities for the production
flow orchestrator system.
"""

import contextvars
import logging
import os
import sys
import json
from datetime import datetime, timezone
from typing import Optional
from pathlib import Path

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
}

# Per-task context set by LoggerContext; asyncio tasks each see their own copy
_task_context: contextvars.ContextVar = contextvars.ContextVar("pfo_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter for structured JSON logging.

    Formats log records as JSON with additional context fields for better
    observability and log aggregation.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception information if present
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        # Add extra fields from record
        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class UnitContextFilter(logging.Filter):
    """
    Filter to add production context to log records.

    Adds component, unit_id, webhook_id and similar context to every record
    emitted through the logger it is attached to.
    """

    def __init__(self):
        super().__init__()
        self.context = {}

    def set_context(self, **kwargs):
        """Set context variables for logging."""
        self.context.update(kwargs)

    def clear_context(self):
        """Clear all context variables."""
        self.context.clear()

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context to log record."""
        for context in (_task_context.get(), self.context):
            for key, value in context.items():
                if not hasattr(record, key):
                    setattr(record, key, value)
        return True


def _context_filter(logger: logging.Logger) -> UnitContextFilter:
    context_filter = getattr(logger, "context_filter", None)
    if context_filter is None:
        context_filter = UnitContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return context_filter


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with appropriate configuration.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Avoid adding handlers multiple times
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(getattr(logging, level.upper()))
        return logger

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Console handler; stdout is left to CLI output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler if specified
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper()))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    _context_filter(logger)
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_log_context(logger: logging.Logger, **kwargs):
    """
    Set context variables for a logger.

    Args:
        logger: Logger instance
        **kwargs: Context variables to set
    """
    _context_filter(logger).set_context(**kwargs)


def clear_log_context(logger: logging.Logger):
    """Clear context variables for a logger."""
    if hasattr(logger, 'context_filter'):
        logger.context_filter.clear_context()


class LoggerContext:
    """
    Context manager for temporary log context.

    Used around per-unit and per-delivery work so every record emitted inside
    carries the unit or delivery it belongs to. The context lives in a
    ``ContextVar``, so concurrent tasks never see each other's values.
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = logger
        self.context = kwargs
        self._token = None

    def __enter__(self):
        """Set temporary context."""
        _context_filter(self.logger)
        self._token = _task_context.set({**_task_context.get(), **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore old context."""
        _task_context.reset(self._token)


# Default logger instance for the orchestrator
orchestrator_logger = setup_logger(
    "production_flow_orchestrator",
    level=os.environ.get("PFO_LOG_LEVEL", "INFO"),
    structured=True
)
