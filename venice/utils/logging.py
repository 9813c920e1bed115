# venice/utils/logging.py
"""
Logging setup for venice.

This module provides structured logging with request context, performance
tracking and multiple output formats. Handlers are attached to the ``venice``
logger namespace only, so applications keep control of the root logger.
"""

import os
import sys
import json
import logging
import threading
import traceback
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path
from logging.handlers import RotatingFileHandler
from contextlib import contextmanager

LIBRARY_LOGGER = "venice"

_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "asctime", "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON objects for easy parsing by log aggregation systems.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "process_id": os.getpid(),
            "thread_name": threading.current_thread().name,
        }

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            extra_fields = {}
            for key, value in record.__dict__.items():
                if key in _STANDARD_ATTRS:
                    continue
                try:
                    json.dumps(value)
                    extra_fields[key] = value
                except (TypeError, ValueError):
                    extra_fields[key] = str(value)

            if extra_fields:
                log_obj["extra"] = extra_fields

        return json.dumps(log_obj, ensure_ascii=False)


class ContextFormatter(logging.Formatter):
    """
    Formatter that prefixes request context (request id, attempt, status, operation).
    """

    CONTEXT_FIELDS = (
        ("request_id", "req"),
        ("attempt", "attempt"),
        ("status", "status"),
        ("operation", "op"),
    )

    def __init__(self, include_context: bool = True):
        super().__init__(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format with contextual information."""
        formatted = super().format(record)
        if not self.include_context:
            return formatted

        context_parts = []
        for attr, label in self.CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                context_parts.append(f"{label}={value}")

        if not context_parts:
            return formatted

        message = record.getMessage()
        return formatted.replace(message, f"[{','.join(context_parts)}] {message}", 1)


class PerformanceFilter(logging.Filter):
    """
    Filter that tracks timing of logged operations.
    """

    def __init__(self):
        super().__init__()
        self._operation_times: Dict[str, list] = {}
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        """Add performance information to log records."""
        operation = getattr(record, "operation", None)
        duration = getattr(record, "duration", None)

        if operation is not None and duration is not None:
            with self._lock:
                times = self._operation_times.setdefault(operation, [])
                times.append(duration)

                record.avg_duration = sum(times) / len(times)
                record.operation_count = len(times)

        return True

    def get_performance_stats(self) -> Dict[str, Dict[str, float]]:
        """Get performance statistics for all operations."""
        with self._lock:
            stats = {}
            for op_name, times in self._operation_times.items():
                if times:
                    stats[op_name] = {
                        "count": len(times),
                        "total_time": sum(times),
                        "avg_time": sum(times) / len(times),
                        "min_time": min(times),
                        "max_time": max(times),
                        "last_time": times[-1]
                    }
            return stats

    def reset(self):
        with self._lock:
            self._operation_times.clear()


class LogManager:
    """
    Central logging manager for venice.

    Installs and replaces the handlers of the ``venice`` logger.
    """

    def __init__(self):
        self._handlers: Dict[str, logging.Handler] = {}
        self._performance_filter = PerformanceFilter()
        self._signature = None

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(LIBRARY_LOGGER)

    def configure(
        self,
        level: str = "WARNING",
        format_type: str = "simple",  # "simple", "context", "json"
        log_to_file: bool = False,
        log_file: Optional[str] = None,
        max_file_size: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        console_output: bool = True
    ):
        """
        Configure library logging.

        Calling again with the same arguments is a no-op; different arguments
        replace the handlers installed by the previous call.

        Args:
            level: Logging level
            format_type: Formatter type
            log_to_file: Enable file logging
            log_file: Log file path
            max_file_size: Maximum size in bytes before rotation
            backup_count: Number of backup files to keep
            console_output: Enable console output
        """
        signature = (level, format_type, log_to_file, log_file, console_output)
        if signature == self._signature:
            return

        numeric_level = getattr(logging, level.upper(), logging.WARNING)
        library_logger = self.logger
        library_logger.setLevel(numeric_level)

        for name in list(self._handlers):
            self.remove_handler(name)

        formatter = self._create_formatter(format_type)

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(numeric_level)
            console_handler.setFormatter(formatter)
            console_handler.addFilter(self._performance_filter)
            self.add_handler("console", console_handler)

        if log_to_file:
            log_path = Path(log_file) if log_file else Path.home() / ".venice" / "venice.log"
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                str(log_path),
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            file_handler.addFilter(self._performance_filter)
            self.add_handler("file", file_handler)

        self._signature = signature

    def _create_formatter(self, format_type: str) -> logging.Formatter:
        """Create formatter based on type."""
        if format_type == "json":
            return JSONFormatter()
        elif format_type == "context":
            return ContextFormatter()
        else:  # simple
            return logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )

    def add_handler(self, name: str, handler: logging.Handler):
        """Add a handler to the library logger."""
        self.logger.addHandler(handler)
        self._handlers[name] = handler

    def remove_handler(self, name: str):
        """Remove a handler by name."""
        handler = self._handlers.pop(name, None)
        if handler is not None:
            self.logger.removeHandler(handler)
            handler.close()

    def get_performance_stats(self) -> Dict[str, Dict[str, float]]:
        """Get performance statistics."""
        return self._performance_filter.get_performance_stats()

    def reset_performance_stats(self):
        """Reset performance statistics."""
        self._performance_filter.reset()

    def set_level(self, level: str):
        """Set logging level for the library logger and its handlers."""
        numeric_level = getattr(logging, level.upper(), logging.WARNING)
        self.logger.setLevel(numeric_level)

        for handler in self._handlers.values():
            handler.setLevel(numeric_level)


# Global log manager instance
_log_manager = LogManager()


def configure_logging(**kwargs):
    """Configure the library logging system."""
    _log_manager.configure(**kwargs)


def set_log_level(level: str):
    """Set library logging level."""
    _log_manager.set_level(level)


def get_performance_stats() -> Dict[str, Dict[str, float]]:
    """Get performance statistics from logging."""
    return _log_manager.get_performance_stats()


def reset_performance_stats():
    """Reset performance statistics."""
    _log_manager.reset_performance_stats()


@contextmanager
def log_operation(operation: str, logger: Optional[logging.Logger] = None, level: str = "DEBUG"):
    """
    Context manager for logging operations with timing.

    Args:
        operation: Name of the operation
        logger: Logger to use (default: the library logger)
        level: Log level for the operation

    Example:
        >>> with log_operation("list_api_keys", logger):
        ...     keys = list(client.api_keys.iter_all())
        # Logs: "Starting list_api_keys" and "Completed list_api_keys in 0.84s"
    """
    logger = logger or logging.getLogger(LIBRARY_LOGGER)
    numeric_level = getattr(logging, level.upper(), logging.DEBUG)
    start_time = datetime.now()

    logger.log(numeric_level, f"Starting {operation}", extra={"operation": operation})

    try:
        yield
    except Exception as e:
        duration = (datetime.now() - start_time).total_seconds()
        logger.error(
            f"Failed {operation} after {duration:.2f}s: {e}",
            extra={"operation": operation, "duration": duration, "error_type": type(e).__name__}
        )
        raise

    duration = (datetime.now() - start_time).total_seconds()
    logger.log(
        numeric_level,
        f"Completed {operation} in {duration:.2f}s",
        extra={"operation": operation, "duration": duration}
    )
