"""Process lifespan management (startup/shutdown hooks)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from .config.settings import get_settings
from .lifecycle.shutdown import GracefulShutdownHandler
from .observability.logger import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan_manager(*, install_signal_handlers: bool = True) -> AsyncIterator[GracefulShutdownHandler]:
    """Own the shutdown coordinator for the life of the process.

    Listeners and other resources register their hooks on the yielded handler.
    Leaving the block (normally or through an error) runs the hooks once.
    """
    settings = get_settings()

    configure_logging(settings)
    logger.info("starting_application", service_name=settings.service_name)

    shutdown_handler = GracefulShutdownHandler()
    if install_signal_handlers:
        shutdown_handler.install_signal_handlers()

    try:
        yield shutdown_handler
    finally:
        await shutdown_handler.shutdown(reason="lifespan_exit")
        logger.info("application_shutdown_complete")
