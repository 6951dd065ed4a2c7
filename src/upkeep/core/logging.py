"""
Upkeep Logging - structlog setup for ticks, rules and instances.

A tick fans out over rules, dates and targets, so a single log line only
makes sense together with the ids around it. Every event is emitted as a
snake_case name plus key/value pairs (``rule_id``, ``target_id``,
``recurrence_key``), and ``tick_id`` is bound once per tick through
contextvars so concurrent ticks stay separable.

Two renderers:

- JSON (default when stdout is not a terminal): ECS field names
  (``@timestamp``, ``log.level``, ``log.logger``, ``service.name``) so
  the lines can be shipped as-is.
- Console: colored, with recurrence keys shortened to their first
  characters.

Examples:
    >>> from upkeep.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True, service="upkeep")
    >>> log = get_logger(__name__)
    >>> log.info("instance_created", rule_id="r-1", target_id="fl-7")
"""

from __future__ import annotations

import contextvars
import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "upkeep"
_KEY_PREVIEW = 12

# structlog key -> ECS field
_ECS_FIELDS = {
    "timestamp": "@timestamp",
    "level": "log.level",
    "logger": "log.logger",
}


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _rename_ecs(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key, field in _ECS_FIELDS.items():
        if key in event_dict:
            event_dict[field] = event_dict.pop(key)
    return event_dict


def _shorten_keys(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    key = event_dict.get("recurrence_key")
    if isinstance(key, str) and len(key) > _KEY_PREVIEW:
        event_dict["recurrence_key"] = key[:_KEY_PREVIEW]
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "upkeep",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines when True, console when False, auto (JSON
            unless stdout is a terminal) when None
        service: Value for ``service.name``
        stream: Where the root handler writes; stdout by default. The CLI
            passes stderr so ``--json`` output stays parseable.
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service
    numeric_level = getattr(logging, level.upper())

    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _add_service,
    ]
    if json_format:
        processors += [
            _rename_ecs,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [_shorten_keys, structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=stream or sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind ids that every following event in this context should carry."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind ids for the duration of a block, then restore what was there.

    Restoring (rather than unbinding) keeps an outer binding intact when
    the same key is bound again inside, e.g. ``run_for_rule`` called from
    a handler that already bound ``tick_id``::

        async with LogContext(tick_id=tick_id):
            ...
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: dict[str, contextvars.Token[Any]] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
