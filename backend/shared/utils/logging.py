"""
Structured logging for the oddsfeed workers.

Every module logs through structlog with event-name messages
(`logger.info("live_sync_complete", provider=..., events=...)`). Output is
a colored console in dev and one JSON object per line elsewhere; stdlib
loggers (httpx, sqlalchemy, asyncio) are routed through the same renderer.
"""
from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any, MutableMapping

import structlog
from shared.config import Environment, get_settings

# Third-party loggers that only matter at WARNING and above.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "sqlalchemy.engine", "redis")


def _plain_enums(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """EventStatus.LIVE -> "LIVE", so JSON lines stay greppable."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def setup_logging(service_name: str, extra_context: dict[str, Any] | None = None) -> None:
    """
    Configure structlog and the stdlib root logger for one worker process.

    Args:
        service_name: ingest or scheduler; bound to every line as `service`.
        extra_context: Additional static fields bound to every line.
    """
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _plain_enums,
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.environment == Environment.DEV:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer(default=str)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        service=service_name,
        instance_id=settings.instance_id or None,
        environment=settings.environment.value,
        **(extra_context or {}),
    )


def bind_log_context(**fields: Any) -> None:
    """
    Bind fields to every log line of the current task.

    asyncio tasks copy the context when created, so a provider engine binds
    its name once at the top of its own task without leaking it to others.
    """
    structlog.contextvars.bind_contextvars(**fields)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
