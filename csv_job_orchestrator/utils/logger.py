"""
Logging utilities for CSV Job Orchestrator

Provides structured JSON logging and per-execution log context. Context is
held in a ``contextvars.ContextVar`` so concurrent executions running in the
same event loop each see their own ``job_id``/``execution_id``.
"""

import logging
import sys
import json
import contextvars
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path


ROOT_LOGGER_NAME = "csv_job_orchestrator"

_log_context: contextvars.ContextVar = contextvars.ContextVar("cjo_log_context", default={})

_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
})


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON.

    Extra fields passed through ``extra={...}`` and the active job context are
    emitted under the ``extra`` key.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """Adds the current job context (job_id, execution_id, component) to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with console (and optionally file) handlers.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    log_level = getattr(logging, level.upper())
    logger.setLevel(log_level)

    # Avoid adding handlers multiple times
    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(JobContextFilter())
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(JobContextFilter())
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def set_log_context(**kwargs) -> contextvars.Token:
    """
    Merge context variables into the current log context.

    Returns:
        Token that can be passed to ``reset_log_context``
    """
    context = dict(_log_context.get())
    context.update(kwargs)
    return _log_context.set(context)


def reset_log_context(token: contextvars.Token):
    """Restore the log context captured by ``set_log_context``."""
    _log_context.reset(token)


def get_log_context() -> Dict[str, Any]:
    """Current log context."""
    return dict(_log_context.get())


class LoggerContext:
    """
    Context manager for temporary log context.

    Usage:
        with LoggerContext(job_id=job_id, execution_id=execution_id):
            ...
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        self._token = set_log_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            reset_log_context(self._token)
            self._token = None
