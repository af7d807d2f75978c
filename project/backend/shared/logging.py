"""
Structured logging setup for all modules.

Provides JSON-structured logging with automatic workflow_id/job_id injection.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from shared.config import settings

# Context variables for the workflow and job currently being processed
workflow_id_context: ContextVar[Optional[str]] = ContextVar("workflow_id", default=None)
job_id_context: ContextVar[Optional[str]] = ContextVar("job_id", default=None)

# Standard LogRecord attributes to exclude from the extra fields
STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "getMessage", "taskName"
}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "module": record.module,
            "message": record.getMessage(),
        }

        workflow_id = workflow_id_context.get()
        if workflow_id:
            log_data["workflow_id"] = str(workflow_id)
        job_id = job_id_context.get()
        if job_id:
            log_data["job_id"] = str(job_id)

        # Python's logging adds extra fields as attributes to the record
        for key, value in record.__dict__.items():
            if key not in STANDARD_ATTRS and not key.startswith("_"):
                if isinstance(value, (str, int, float, bool, type(None))):
                    log_data[key] = value
                else:
                    log_data[key] = str(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Module name (e.g., "job_scheduler")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Don't add handlers if already configured
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter())
    logger.addHandler(console_handler)

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=100 * 1024 * 1024,  # 100MB
            backupCount=5
        )
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger


def set_workflow_id(workflow_id: Optional[str]) -> None:
    """
    Set workflow_id in context for automatic injection into logs.

    Args:
        workflow_id: Workflow ID to set in context
    """
    workflow_id_context.set(workflow_id)


def get_workflow_id() -> Optional[str]:
    """Get current workflow_id from context."""
    return workflow_id_context.get()


def set_job_id(job_id: Optional[str]) -> None:
    """
    Set job_id in context for automatic injection into logs.

    Args:
        job_id: Job ID to set in context
    """
    job_id_context.set(job_id)


def get_job_id() -> Optional[str]:
    """Get current job_id from context."""
    return job_id_context.get()
