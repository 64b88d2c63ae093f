"""Logging configuration for the workflow execution engine.

Log records are stamped with the run and node they belong to. The context is
kept per thread, so runs executing side by side in the background pool each
log under their own ids.
"""

import logging
import sys
import json
import threading
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from pathlib import Path


RUN_FIELDS = ("run_id", "node_id", "node_type")

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [run=%(run_id)s node=%(node_id)s] - %(message)s"


class RunContextFilter(logging.Filter):
    """Filter that stamps every record with the current thread's run context.

    Records get ``run_id``, ``node_id`` and ``node_type`` attributes, set to
    ``"-"`` outside of a run so format strings can always refer to them.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def bind(self, run_id: str, node_id: Optional[str] = None, node_type: Optional[str] = None):
        self._local.run_id = run_id
        self._local.node_id = node_id
        self._local.node_type = node_type

    def clear(self):
        for field in RUN_FIELDS:
            setattr(self._local, field, None)

    def current(self) -> Dict[str, Optional[str]]:
        """The run context bound to the calling thread."""
        return {field: getattr(self._local, field, None) for field in RUN_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, value in self.current().items():
            # Explicit values passed through ``extra`` win over the bound context
            if getattr(record, field, None) is None:
                setattr(record, field, value or "-")
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record, keyed by run and node."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Run context; omitted outside of a run
        for field in RUN_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, "-"):
                entry[field] = value

        # Node outcome fields attached by log_node_event
        entry.update(getattr(record, "node_fields", {}))

        if record.exc_info:
            entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        return json.dumps(entry, default=str)


_run_context = RunContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the workflow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Format string; may use %(run_id)s, %(node_id)s and %(node_type)s
        structured: Whether to emit JSON records instead of formatted text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    # Create formatter
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_run_context)
    root_logger.addHandler(console_handler)

    # Rotating file handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_run_context)
        root_logger.addHandler(file_handler)

    # Quiet third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def bind_run_context(run_id: str, node_id: Optional[str] = None, node_type: Optional[str] = None):
    """Attach the calling thread's subsequent log records to a run (and node)."""
    _run_context.bind(run_id, node_id, node_type)


def clear_run_context():
    """Detach the calling thread from its run."""
    _run_context.clear()


def current_run_context() -> Dict[str, Optional[str]]:
    return _run_context.current()


def log_node_event(logger: logging.Logger, level: int, message: str, **fields: Any):
    """Log a node event with outcome fields (branch taken, failure flag, ...)."""
    logger.log(level, message, extra={"node_fields": fields})


class RetryLogger:
    """Reports retries of a storage operation."""

    def __init__(self, operation: str):
        self.operation = operation
        self.logger = get_logger(f"workflow_engine.retry.{operation}")

    def retrying(self, error: Exception, attempt: int, max_attempts: int, delay: float):
        self.logger.warning(
            f"{self.operation} failed on attempt {attempt}/{max_attempts} "
            f"({type(error).__name__}: {error}); retrying in {delay:.2f}s"
        )

    def gave_up(self, error: Exception, attempts: int):
        self.logger.error(
            f"{self.operation} failed after {attempts} attempts: {type(error).__name__}: {error}"
        )
