"""Structured logging configuration for the throttling service.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

from throttle.app.core.config import settings

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(request_id: Optional[str]) -> None:
    """Bind a request id to the current task so every log line carries it."""
    _request_id_var.set(request_id)


def get_current_request_id() -> Optional[str]:
    """Return the request id bound to the current task, if any."""
    return _request_id_var.get()


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.

    Attributes:
        fields: List of fields to include in JSON output
    """

    # Standard fields always included
    STANDARD_FIELDS = ["name", "levelname", "message", "timestamp"]

    # Contextual fields for request and throttling decisions
    CONTEXT_FIELDS = [
        "request_id",      # Request ID from X-Request-ID header
        "rate_limit_key",  # Resolved throttling key (user:, ip:, apikey:...)
        "policy",          # Policy name applied to the request
        "strategy",        # Window strategy of the policy
        "store",           # State store tier involved (remote / local)
        "path",            # Request path
        "method",          # HTTP method
        "status_code",     # HTTP response status
    ]

    _RESERVED = (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    )

    def __init__(
        self,
        fields: Optional[list] = None,
        datefmt: Optional[str] = None,
    ):
        """Initialize JSON formatter.

        Args:
            fields: Custom fields to include (defaults to all standard + context)
            datefmt: Date format string (ISO8601 by default)
        """
        super().__init__(datefmt=datefmt)
        self.fields = fields or (self.STANDARD_FIELDS + self.CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        log_data: Dict[str, Any] = {}

        record.message = record.getMessage()

        log_data["timestamp"] = datetime.now().astimezone().isoformat()
        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.message

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        for field in self.CONTEXT_FIELDS:
            if field not in self.fields:
                continue
            value = getattr(record, field, None)
            if value is not None and value != "-":
                log_data[field] = value

        # Anything else passed through extra=
        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    Adds default values for the throttling context fields if not already
    present, and the request id bound by the request id middleware.
    """

    CONTEXT_DEFAULTS = {
        "request_id": None,
        "rate_limit_key": None,
        "policy": None,
        "strategy": None,
        "store": None,
        "path": None,
        "method": None,
        "status_code": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to log record if not present.

        Args:
            record: Log record to enrich

        Returns:
            True to allow the record through
        """
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        if record.request_id is None:
            record.request_id = get_current_request_id()
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - request_id=%(request_id)s - key=%(rate_limit_key)s - policy=%(policy)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "throttle.app.core.logging.JSONFormatter",
        }
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "throttle.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "throttle": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn.access": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "throttle") -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, defaults to "throttle"

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    rate_limit_key: Optional[str] = None,
    policy: Optional[str] = None,
    strategy: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    Args:
        request_id: Request ID
        rate_limit_key: Resolved throttling key
        policy: Policy name
        strategy: Window strategy name
        **extra: Additional custom fields

    Returns:
        Dictionary suitable for passing as extra= parameter to logging calls

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(rate_limit_key="ip:10.0.0.1", policy="auth")
        ... )
    """
    context = {
        "request_id": request_id,
        "rate_limit_key": rate_limit_key,
        "policy": policy,
        "strategy": strategy,
    }
    context.update(extra)
    # Filter out None values
    return {k: v for k, v in context.items() if v is not None}
