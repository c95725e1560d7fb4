"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for financing and payment
operations. Records may carry portfolio context (invoice, payment, user,
action) which is emitted as top-level JSON fields.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes promoted to top-level JSON fields when present
CONTEXT_FIELDS = (
    "correlation_id",
    "user_id",
    "action",
    "invoice_id",
    "payment_id",
    "resource",
    "extra",
)

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "cartera",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for structured output, "text" for plain lines
        log_file: Optional file path; stdout when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "cartera") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               invoice_id: Optional[str] = None, payment_id: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a portfolio operation with its context as structured fields.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, ...)
        message: Log message
        user_id: User who recorded the operation
        action: Operation name, e.g. "apply_payment"
        invoice_id: Invoice the operation touched
        payment_id: Payment created by the operation
        resource: Any other affected resource
        correlation_id: Request correlation ID
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    context = {
        "user_id": user_id,
        "action": action,
        "invoice_id": invoice_id,
        "payment_id": payment_id,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra or None,
    }
    logger.log(levelno, message, extra={k: v for k, v in context.items() if v is not None})
