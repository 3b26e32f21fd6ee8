"""
Logging utility module for mongocdc.

Provides JSON-structured logging with source task id propagation, so every
line a task emits (including copier worker threads that copy the context)
can be attributed to it.
"""

import json
import logging
import sys
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variable for task id propagation
_task_id: ContextVar[Optional[str]] = ContextVar('task_id', default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def get_task_id() -> Optional[str]:
    """Get the current source task id from context."""
    return _task_id.get()


def set_task_id(task_id: Optional[str]) -> None:
    """Set the source task id in context."""
    _task_id.set(task_id)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        task_id = get_task_id()
        if task_id:
            log_data['task_id'] = task_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_') and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure the root logger once for the process.

    Args:
        level: Logging level name
        json_logs: JSON lines when True, plain text otherwise
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s: %(message)s'
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # pymongo is chatty at DEBUG
    logging.getLogger('pymongo').setLevel(max(root.level, logging.INFO))


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Get a JSON logger with task id propagation.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (default: INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


class TaskContext:
    """Context manager binding a source task id to log lines."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        self._previous_id = get_task_id()
        set_task_id(self.task_id)
        return self.task_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        set_task_id(self._previous_id)
