"""Logging configuration for the workflow engine.

Records carry per-thread context (request id, instance id, operation) so a
single instance's advance loop can be followed across log lines.
"""

import json
import logging
import sys
import threading
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s"

# Third-party loggers that are noisy at DEBUG
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Merge the current thread's context into ``record.extra_fields``.

    Fields passed explicitly through ``extra`` win over thread context. A
    ``context_suffix`` attribute renders the instance id for plain-text logs.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _fields(self) -> Dict[str, Any]:
        fields = getattr(self._local, "fields", None)
        if fields is None:
            fields = self._local.fields = {}
        return fields

    def set_context(self, **kwargs):
        self._fields().update(kwargs)

    def clear_context(self):
        self._fields().clear()

    def get_context(self) -> Dict[str, Any]:
        return dict(self._fields())

    def filter(self, record: logging.LogRecord) -> bool:
        merged = {**self._fields(), **getattr(record, "extra_fields", {})}
        record.extra_fields = merged
        instance_id = merged.get("instance_id")
        record.context_suffix = f" [instance={instance_id}]" if instance_id else ""
        return True


_context_filter = WorkflowContextFilter()


def _build_handlers(formatter: logging.Formatter, log_file: Optional[str],
                    max_size: int, backup_count: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the service.

    Args:
        level: Logging level name
        log_file: Optional path of a rotating log file
        log_format: Format string for plain-text output
        structured: Emit JSON records instead of plain text
        max_size: Bytes before the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        fmt = log_format or DEFAULT_FORMAT
        if "%(context_suffix)s" not in fmt:
            fmt += "%(context_suffix)s"
        formatter = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    for handler in _build_handlers(formatter, log_file, max_size, backup_count):
        root_logger.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("bizflow").setLevel(numeric_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for subsequent log messages on this thread."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    """Clear all logging context fields on this thread."""
    _context_filter.clear_context()


def get_logging_context() -> Dict[str, Any]:
    return _context_filter.get_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    logger.log(level, message, extra={"extra_fields": context})
