"""
Structured Logging Configuration Module

JSON log lines for ledger operations. Every line carries the correlation id
of the request that produced it, so a movement's commit line, its audit
failure and its notification failure can be tied back together.
"""

import logging
import json
import contextvars
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .exceptions import DependencyError


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s]: %(message)s"

# Request-scoped correlation id, set by the API middleware
_correlation_id = contextvars.ContextVar('correlation_id', default=None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str):
    """Tag every log line emitted inside the block with ``correlation_id``"""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    """Copies the context correlation id onto records that lack one"""

    def filter(self, record):
        if getattr(record, 'correlation_id', None) is None:
            record.correlation_id = get_correlation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty fields are omitted"""

    context_fields = ("correlation_id", "user_id", "action", "resource", "extra")

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in self.context_fields:
            value = getattr(record, name, None)
            if value is None and name == "correlation_id":
                value = get_correlation_id()
            if value not in (None, "-"):
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json",
                  logger_name: str = "ledgerbank") -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "json" for structured output, "text" for human-readable lines
        logger_name: Name of the root application logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Calling twice (e.g. one app per test) must not stack handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "ledgerbank") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with structured context.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Log message
        user_id: Owner or admin performing the action
        action: Action being performed (e.g. transaction_create)
        resource: ``<type>:<id>`` of the record acted upon
        correlation_id: Overrides the request's correlation id
        extra: Additional structured data
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id or get_correlation_id(),
        "extra": extra,
    }
    logger.log(getattr(logging, level.upper()), message,
               extra={k: v for k, v in fields.items() if v})


def best_effort(logger: logging.Logger, what: str, fn, *args, **kwargs):
    """
    Run a post-commit side effect (notification, audit record). A failure is
    logged as a DependencyError and swallowed; the committed change stands.
    """
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        error = e if isinstance(e, DependencyError) else DependencyError(f"{what} failed: {e}")
        logger.error(f"{what} failed after commit: {error.message}", exc_info=True)
        return None
