"""Structured logging configuration using structlog."""

import dataclasses
import logging
import sys
from datetime import date
from enum import Enum
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, WrappedLogger

# Client libraries that are noisy at DEBUG level
_QUIET_LOGGERS = ("urllib3", "google", "grpc")

LOG_LEVELS = ("DEBUG", "INFO", "WARN", "WARNING", "ERROR", "CRITICAL")


def _plain_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return str(value)
    return value


def render_domain_values(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Render enums, dates, table references and metadata as plain values.

    Objects with ``to_dict()`` become dicts, other dataclasses their string
    form, so both renderers print ``project.dataset.table$YYYYMMDD`` rather
    than a repr.
    """
    for key, value in event_dict.items():
        event_dict[key] = _plain_value(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
) -> structlog.BoundLogger:
    """Configure structured logging.

    Logs go to stderr; stdout is reserved for command output such as
    rendered SQL and run statistics.

    Args:
        log_level: Log level (DEBUG, INFO, WARN, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
        correlation_id: Optional correlation ID bound to every event of this run

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        render_domain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if correlation_id:
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return structlog.get_logger("promoter")


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a logger instance, named after the component using it."""
    return structlog.get_logger(name) if name else structlog.get_logger()
