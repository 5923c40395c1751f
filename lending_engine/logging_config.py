"""
Structured Logging Configuration Module

One JSON object per line for ingest, allocation, posting and the workers.
Correlation fields (tenant, transaction, job, worker) travel on the log
record; the tenant falls back to the one bound by ``tenant_context``.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

from .tenancy import get_current_tenant


CONTEXT_FIELDS = ("action", "resource", "tenant_id", "transaction_id", "job_id", "worker_id", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JSONFormatter(logging.Formatter):
    """Renders a record and its correlation fields as JSON"""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update((name, getattr(record, name, None)) for name in CONTEXT_FIELDS)
        entry["tenant_id"] = entry["tenant_id"] or get_current_tenant()

        entry = {key: value for key, value in entry.items() if value is not None}
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "lending_engine",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the engine's logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the engine's top-level logger
        log_format: "json" or "text"
        log_file: File to append to; stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Calling twice must not double every line
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False

    return logger


def get_logger(name: str = "lending_engine") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, tenant_id: Optional[str] = None,
               transaction_id: Optional[str] = None, job_id: Optional[str] = None,
               worker_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a message with correlation fields attached to the record.

    Args:
        logger: Logger instance
        level: Level name (info, warning, error, ...)
        message: Log message
        action: Operation being performed (ingest, process_event, ...)
        tenant_id: Tenant the operation runs for
        transaction_id: Gateway transaction id
        job_id: Queue job id
        worker_id: Worker identifier
        extra: Additional structured data
    """
    fields = dict(action=action, tenant_id=tenant_id, transaction_id=transaction_id,
                  job_id=job_id, worker_id=worker_id, extra=extra)
    logger.log(logging.getLevelName(level.upper()), message,
               extra={name: value for name, value in fields.items() if value is not None})
