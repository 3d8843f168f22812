"""structlog setup shared by the listeners, the shutdown coordinator and the routes."""

from __future__ import annotations

import logging

import structlog
from structlog.types import Processor

from ..config.settings import ServerSettings, get_settings

# uvicorn logs through stdlib logging; only its warnings are worth keeping
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def resolve_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: ServerSettings | None = None) -> None:
    """Render every event as one JSON line, tagged with the service name."""
    settings = settings or get_settings()

    processors: list[Processor] = [
        # subject / client_id are bound per request or per socket
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=settings.service_name)

    for name in UVICORN_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None):
    return structlog.get_logger(name)
