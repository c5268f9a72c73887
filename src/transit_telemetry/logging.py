"""Structured logging setup for the telemetry worker.

Events go through structlog on top of stdlib logging, so httpx, SQLAlchemy
and asyncpg records share one handler and one format: a console renderer in
development, one JSON object per line everywhere else.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor, WrappedLogger

from transit_telemetry.config import get_settings

# Chatty at INFO; only their warnings are useful in worker logs.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _service_fields(app_name: str, version: str) -> Processor:
    def add_service(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", app_name)
        event_dict.setdefault("version", version)
        return event_dict

    return add_service


def setup_logging(json_logs: bool | None = None) -> None:
    """Route structlog and stdlib logging to stdout.

    Args:
        json_logs: Force the JSON renderer on or off. By default JSON is used
            outside the development environment.
    """
    settings = get_settings()
    if json_logs is None:
        json_logs = settings.environment != "development"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        shared_processors.append(_service_fields(settings.app_name, settings.app_version))
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

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
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # SQL echo only in debug mode
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.stdlib.get_logger(name)


def bind_job_context(**kwargs: Any) -> None:
    """Attach fields (``poll_id``, ``job``) to every event of the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()
