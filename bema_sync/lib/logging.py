"""
Structured logging with JSON formatter and job ID support.
Provides consistent logging across the sync engine with per-run tracing.
"""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional
from contextvars import ContextVar


# Between INFO and WARNING: significant but expected events (skipped runs, cancellations)
NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

# Context variable to store the id of the sync job being executed
job_id_var: ContextVar[Optional[str]] = ContextVar('job_id', default=None)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Outputs log records as JSON objects with timestamp, level, message, and context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        job_id = job_id_var.get()
        if job_id:
            log_data["job_id"] = job_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, NOTICE, WARNING, ERROR, CRITICAL)
        json_format: If True, use JSON formatter; otherwise use simple text format
    """
    log_level = _resolve_level(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def set_job_id(job_id: Optional[str]) -> None:
    """
    Set the sync job ID for the current context.
    Called by the scheduler before a run starts and cleared when it ends.

    Args:
        job_id: Job identifier, or None to clear
    """
    job_id_var.set(job_id)


def get_job_id() -> Optional[str]:
    """Get the current sync job ID, if any."""
    return job_id_var.get()


def log_with_context(logger: logging.Logger, level: str, message: str, **extra_fields) -> None:
    """
    Log a message with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (debug, info, notice, warning, error, critical)
        message: Log message
        **extra_fields: Additional fields to include in the log
    """
    logger.log(_resolve_level(level), message, extra={"extra_fields": extra_fields})


def _resolve_level(level: str) -> int:
    if level.upper() == "NOTICE":
        return NOTICE
    return getattr(logging, level.upper(), logging.INFO)
