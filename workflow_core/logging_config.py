"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all workflow engine operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


# Structured attributes copied from a log record when present
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "instance_id", "step_id", "extra")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "workflow") -> logging.Logger:
    """
    Setup logging for the application.

    All engine loggers live under the ``workflow`` namespace, so configuring
    the root ``workflow`` logger covers every component.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` for structured output, ``text`` for plain lines
        logger_name: Name of the logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "workflow") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               instance_id: Optional[str] = None, step_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an engine action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the user performing the action
        action: Action being performed
        resource: Resource being acted upon, e.g. ``instance:<id>``
        correlation_id: Correlation ID for request tracing
        instance_id: Workflow instance the action belongs to
        step_id: Workflow step the action belongs to
        extra: Additional structured data
    """
    record = logger.makeRecord(
        logger.name, getattr(logging, level.upper()),
        __name__, 0, message, (), None
    )
    context = {
        "user_id": user_id, "action": action, "resource": resource,
        "correlation_id": correlation_id, "instance_id": instance_id,
        "step_id": step_id, "extra": extra
    }
    for field, value in context.items():
        if value:
            setattr(record, field, value)

    logger.handle(record)
