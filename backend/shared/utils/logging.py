"""
Structured logging for the Scorefeed worker.

structlog over stdlib logging: console output in dev, JSON elsewhere. Every
line carries the service and instance; lines emitted during a poll tick also
carry the poller name and tick number so retries, cache decisions and
detected changes can be traced back to the tick that produced them.
"""
from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, MutableMapping

import structlog
from shared.config import Environment, get_settings

# Keys whose values never reach the log output.
SECRET_KEYS = frozenset({"api_key", "provider_api_key", "x-rapidapi-key", "authorization"})
REDACTED = "***"


def redact_secrets(
    _: Any, __: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask provider credentials, including inside a logged ``headers`` mapping."""
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
    headers = event_dict.get("headers")
    if isinstance(headers, dict):
        event_dict["headers"] = {
            k: (REDACTED if k.lower() in SECRET_KEYS else v) for k, v in headers.items()
        }
    return event_dict


def setup_logging(
    service_name: str,
    extra_context: dict[str, Any] | None = None,
    level: str | None = None,
) -> None:
    """
    Configure structured logging for a service.

    Args:
        service_name: The service identifier (e.g. scheduler).
        extra_context: Additional static context fields bound to every log entry.
        level: Overrides ``settings.log_level``.
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == Environment.DEV:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # httpx logs every request at INFO, including query strings
    for noisy in ("httpx", "httpcore", "asyncio", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    bound: dict[str, Any] = {"service": service_name, "instance_id": settings.instance_id}
    if extra_context:
        bound.update(extra_context)
    structlog.contextvars.bind_contextvars(**bound)


@contextmanager
def poll_context(poller: str, tick: int, **extra: Any) -> Iterator[None]:
    """Bind ``poller`` and ``tick`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(poller=poller, tick=tick, **extra):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a named structured logger."""
    return structlog.get_logger(name)
