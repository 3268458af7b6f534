"""
Structured logging for timecapsule.

Manifesto:
    A digger never raises out of its poll loop, so the log is the only
    place a failed tick, a dropped poison-pill capsule or an exhausted
    requeue becomes visible. Those lines need to be structured and
    greppable.

    - **Structures:** JSON output for log aggregation
    - **Flexes:** colored console for development, JSON for production
    - **Injectable:** a digger takes any object satisfying CapsuleLogger,
      stdlib loggers included once adapted by as_capsule_logger()

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="timecapsule")
             │
             ▼
        structlog processor chain:
          1. TimeStamper(iso)
          2. merge_contextvars
          3. add_log_level / add_logger_name
          4. set_exc_info
          5. add_service_metadata
          6. format_exc_info + elasticsearch_compatible (JSON only)
          7. JSONRenderer | ConsoleRenderer

        logger = get_logger(__name__)
        logger.warning("capsule_requeued", store="Redis", due_at=1700000000000)

Tags:
    logging, structlog, observability, json-logging, timecapsule

Doc-Types:
    api-reference
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Protocol, runtime_checkable

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "timecapsule"


@runtime_checkable
class CapsuleLogger(Protocol):
    """Logging capability a Digger reports through.

    structlog's bound loggers satisfy it. Every method takes an event
    name plus keyword context. A stdlib ``logging.Logger`` matches the
    shape but rejects keyword context, so pass it through
    :func:`as_capsule_logger` first (``DiggerOptions`` does this for you).
    """

    def debug(self, event: str, *args: Any, **kw: Any) -> Any: ...

    def info(self, event: str, *args: Any, **kw: Any) -> Any: ...

    def warning(self, event: str, *args: Any, **kw: Any) -> Any: ...

    def error(self, event: str, *args: Any, **kw: Any) -> Any: ...


def as_capsule_logger(logger: Any) -> CapsuleLogger:
    """Adapt ``logger`` so it accepts an event name plus keyword context.

    stdlib loggers and adapters are wrapped in a structlog bound logger
    that renders the event and its fields as one ``key=value`` message.
    Anything else is returned unchanged.

    Example:
        >>> log = as_capsule_logger(logging.getLogger("mailer"))
        >>> log.error("capsule_dig_failed", store="Redis", error="refused")
    """
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        return structlog.wrap_logger(
            logger,
            wrapper_class=structlog.stdlib.BoundLogger,
            processors=[
                structlog.processors.format_exc_info,
                structlog.processors.KeyValueRenderer(key_order=["event"], drop_missing=True),
            ],
        )
    return logger


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names Elasticsearch/ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")

    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")

    return event_dict


def _processors(json_format: bool) -> list[Processor]:
    """Processor chain ending in the renderer for ``json_format``."""
    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]
    if not json_format:
        return [*processors, structlog.dev.ConsoleRenderer(colors=True)]
    return [
        *processors,
        structlog.processors.format_exc_info,
        _elasticsearch_compatible,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "timecapsule",
) -> None:
    """Route every timecapsule log line through structlog.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for JSON
            unless stdout is a terminal
        service: ``service.name`` stamped on each line

    Example:
        configure_logging(level="DEBUG", service="mailer-digger")
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"unknown log level: {level!r}")

    if json_format is None:
        json_format = not sys.stdout.isatty()

    structlog.configure(
        processors=_processors(json_format),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)


__all__ = [
    "CapsuleLogger",
    "as_capsule_logger",
    "configure_logging",
    "get_logger",
]
