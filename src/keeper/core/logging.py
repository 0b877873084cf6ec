"""
Keeper Logging - structlog setup for the keeper process.

Every module logs event-style keys with keyword fields::

    logger = get_logger(__name__)
    logger.info("queue.cycle_complete", completed=3, failed=1)

``configure_logging`` is called once by the CLI at startup.  Until then
structlog's defaults apply, so library use and tests need no setup.

Processor chain:
    ::

        merge_contextvars          cycle_id / keeper_id bound by LogContext
        add_log_level
        TimeStamper(iso, utc)      optional
        ServiceMetadata            service.name
        flatten_errors             error=<exc> → error.type / error.message / ...
        ecs_keys                   @timestamp, log.level       (JSON only)
        JSONRenderer | ConsoleRenderer

Failures surface as ``KeeperError`` objects (``TaskExecutionError`` for a
failed task).  Passing one as ``error=`` puts its category, retry hint and
context on the log line as flat ``error.*`` keys instead of a repr.

Tags:
    logging, structlog, ecs, keeper
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from keeper.core.errors import KeeperError

DEFAULT_SERVICE_NAME = "sorotask-keeper"


class ServiceMetadata:
    """Stamp ``service.name`` on every event."""

    def __init__(self, service: str) -> None:
        self.service = service

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", self.service)
        return event_dict


def flatten_errors(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Expand an exception passed as ``error=`` into ECS ``error.*`` keys.

    Strings are left alone so callers can still log ``error=str(exc)``.
    """
    error = event_dict.get("error")
    if not isinstance(error, BaseException):
        return event_dict

    del event_dict["error"]
    event_dict["error.type"] = type(error).__name__
    event_dict["error.message"] = str(error)

    if isinstance(error, KeeperError):
        event_dict["error.category"] = error.category.value
        event_dict["error.retryable"] = error.retryable
        if error.cause is not None:
            event_dict["error.cause"] = f"{type(error.cause).__name__}: {error.cause}"
        for key, value in error.context.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


def ecs_keys(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename ``timestamp``/``level`` to their ECS names."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def build_processors(
    *,
    service: str = DEFAULT_SERVICE_NAME,
    json_format: bool = True,
    add_timestamp: bool = True,
) -> list[Processor]:
    """Processor chain used by :func:`configure_logging`, renderer last."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
    ]
    if add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    processors += [
        ServiceMetadata(service),
        flatten_errors,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            ecs_keys,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = DEFAULT_SERVICE_NAME,
    add_timestamp: bool = True,
) -> None:
    """Configure structlog for the keeper process.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_format: JSON lines when True, console output when False.
            ``None`` picks JSON unless stdout is a terminal.
        service: Value of ``service.name`` on every line.
        add_timestamp: Include an ISO-8601 UTC timestamp.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    if json_format is None:
        json_format = not sys.stdout.isatty()

    structlog.configure(
        processors=build_processors(
            service=service, json_format=json_format, add_timestamp=add_timestamp
        ),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Libraries logging through the stdlib share the level and stream.
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger (lazy until first use)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> Mapping[str, Token]:
    """Bind keys onto every later log line in this context.

    Returns the tokens that :class:`LogContext` uses to restore prior values.
    """
    return structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind keys for the duration of a block, then restore what was there.

    Nested scopes keep working: leaving an inner ``LogContext(cycle_id=...)``
    puts back the outer ``cycle_id`` rather than dropping it.

    Example::

        async with LogContext(cycle_id=cycle_id):
            logger.info("queue.cycle_start")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: Mapping[str, Token] = {}

    def __enter__(self) -> LogContext:
        self._tokens = bind_context(**self._context)
        return self

    def __exit__(self, *args) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args) -> None:
        self.__exit__(*args)


__all__ = [
    "DEFAULT_SERVICE_NAME",
    "LogContext",
    "ServiceMetadata",
    "bind_context",
    "build_processors",
    "clear_context",
    "configure_logging",
    "ecs_keys",
    "flatten_errors",
    "get_logger",
    "unbind_context",
]
