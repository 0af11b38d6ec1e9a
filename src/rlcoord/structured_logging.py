"""Structured logging configuration.

JSON-formatted logging for log collectors, toggled via the
RLCOORD_LOGGING_FORMAT environment variable or the config.toml [logging]
section.

Usage:
    from rlcoord.structured_logging import setup_logging, set_trace_context

    setup_logging(level="INFO", component="coordinator")

    # Tag everything logged during one tick
    set_trace_context()
"""

import logging
import os
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

from .errors import ConfigurationError

# Thread-safe trace context using context variables
_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_span_id: ContextVar[str | None] = ContextVar("span_id", default=None)


def generate_trace_id() -> str:
    """Generate a unique trace ID (32-character hex string)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate a unique span ID (16-character hex string)."""
    return uuid.uuid4().hex[:16]


def set_trace_context(trace_id: str | None = None, span_id: str | None = None) -> None:
    """Set the current trace context for correlation.

    Args:
        trace_id: Trace ID to use (generates new one if None).
        span_id: Span ID to use (generates new one if None).
    """
    _trace_id.set(trace_id or generate_trace_id())
    _span_id.set(span_id or generate_span_id())


def get_trace_context() -> dict[str, str | None]:
    return {"trace_id": _trace_id.get(), "span_id": _span_id.get()}


def clear_trace_context() -> None:
    _trace_id.set(None)
    _span_id.set(None)


class CloudJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with severity, component and trace fields."""

    SEVERITY_MAP = {
        "DEBUG": "DEBUG",
        "INFO": "INFO",
        "WARNING": "WARNING",
        "ERROR": "ERROR",
        "CRITICAL": "CRITICAL",
    }

    def __init__(self, component: str = "coordinator", include_timestamp: bool = True):
        """Initialize the formatter.

        Args:
            component: Component name to include in every log.
            include_timestamp: Whether to include timestamp (set False if the
                collector adds it).
        """
        self.component = component
        self.include_timestamp = include_timestamp
        fmt = "%(message)s"
        if include_timestamp:
            fmt = "%(asctime)s " + fmt
        super().__init__(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%S%z")

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add structured fields to the log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["severity"] = self.SEVERITY_MAP.get(record.levelname, "DEFAULT")
        log_record["component"] = self.component
        log_record["target"] = record.name

        trace_ctx = get_trace_context()
        if trace_ctx.get("trace_id"):
            log_record["trace_id"] = trace_ctx["trace_id"]
        if trace_ctx.get("span_id"):
            log_record["span_id"] = trace_ctx["span_id"]

        if "levelname" in log_record:
            del log_record["levelname"]

        if self.include_timestamp and "asctime" in log_record:
            log_record["timestamp"] = log_record.pop("asctime")


def get_logging_format() -> str:
    """Determine logging format from environment or config.

    Returns:
        "json" or "text"
    """
    env_format = os.environ.get("RLCOORD_LOGGING_FORMAT", "").lower()
    if env_format in ("json", "text"):
        return env_format

    try:
        from .central_config import get_config

        return get_config().logging.format.lower()
    except Exception as e:
        # Logging is not configured yet, so the failure can only go to stderr
        print(f"rlcoord: could not read logging format from config: {e}", file=sys.stderr)
        return "text"


def _include_timestamps() -> bool:
    """Whether JSON logs carry a timestamp ([logging] include_timestamps)."""
    try:
        from .central_config import get_config

        return get_config().logging.include_timestamps
    except ConfigurationError:
        # Already reported by get_logging_format
        return True


def setup_logging(level: str = "INFO", component: str = "coordinator") -> None:
    """Configure the root logger with text or JSON output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        component: Component name to include in JSON logs
    """
    log_format = get_logging_format()
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level.upper())

    if log_format == "json":
        include_timestamp = _include_timestamps()
        formatter: logging.Formatter = CloudJsonFormatter(
            component=component,
            include_timestamp=include_timestamp,
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
