"""
Structured Logging Configuration Module

JSON-formatted structured logging for lending operations. Loggers live under
the ``lending`` namespace (``lending.payments``, ``lending.loans`` ...).
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "lending",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Root logger name for the package
        log_format: "json" for structured output, "text" for plain lines
        log_file: Optional file path; stdout/stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "lending") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Action being performed (pay_installment, soft_delete_loan ...)
        resource: Resource being acted upon, as "type:id"
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
    """
    fields = {}
    if action:
        fields["action"] = action
    if resource:
        fields["resource"] = resource
    if correlation_id:
        fields["correlation_id"] = correlation_id
    if extra:
        fields["extra"] = extra

    logger.log(getattr(logging, level.upper()), message, extra=fields)
