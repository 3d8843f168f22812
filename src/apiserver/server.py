"""Server orchestrator: launch, register, bind, ready.

Startup walks ``CONFIGURING -> LAUNCHING -> BINDING -> READY``. Every enabled
listener is created, and gets its shutdown hook, before any of them binds.
Any failure moves to ``FAILED``, closes whatever is already listening and
re-raises: there is no partially started server.
"""

from __future__ import annotations

import asyncio
import os
from typing import Mapping, Sequence, Union

from fastapi import APIRouter
from starlette.types import ASGIApp

from .auth.tokens import TokenValidator
from .config.settings import ServerSettings, get_settings
from .domain.models import ListenerState, ServerState
from .http_app import create_app
from .lifecycle.shutdown import GracefulShutdownHandler
from .observability.logger import get_logger
from .realtime.message_stream import MessageStreamServer
from .transport.launchers import DEFAULT_LAUNCHERS, ProtocolLauncher
from .transport.listener import Listener
from .transport.ports import resolve_port

logger = get_logger(__name__)

AnyListener = Union[Listener, MessageStreamServer]
ListenerRegistry = dict[str, AnyListener]


class ServerOrchestrator:
    def __init__(
        self,
        app: ASGIApp,
        token_validator: TokenValidator,
        shutdown_handler: GracefulShutdownHandler,
        settings: ServerSettings | None = None,
        *,
        launchers: Sequence[ProtocolLauncher] = DEFAULT_LAUNCHERS,
        environ: Mapping[str, str] | None = None,
    ):
        self._app = app
        self._validate_token = token_validator
        self._shutdown = shutdown_handler
        self._settings = settings or get_settings()
        self._launchers = tuple(launchers)
        self._environ = os.environ if environ is None else environ
        self._state = ServerState.CONFIGURING
        self._listeners: ListenerRegistry = {}

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    async def start(self) -> ListenerRegistry:
        if self._state is not ServerState.CONFIGURING:
            raise RuntimeError(f"server already started (state={self._state.value})")

        try:
            launchers = [launcher for launcher in self._launchers if launcher.is_enabled(self._settings)]
            logger.info("protocols_selected", protocols=[launcher.protocol.value for launcher in launchers])

            self._state = ServerState.LAUNCHING
            transports: list[Listener] = []
            for launcher in launchers:
                listener = launcher.create_listener(self._app, self._settings)
                self._register(listener)
                transports.append(listener)

            self._state = ServerState.BINDING
            await self._bind_all(transports)
        except Exception as exc:
            self._state = ServerState.FAILED
            logger.error("server_startup_failed", error=str(exc), error_type=type(exc).__name__)
            await self._close_listening()
            raise

        self._state = ServerState.READY
        logger.info("server_ready", listeners=sorted(self._listeners))
        return self._listeners

    def _register(self, listener: Listener) -> None:
        key = listener.protocol.value
        self._listeners[key] = listener
        stream: MessageStreamServer | None = None
        if self._settings.websocket_enabled:
            stream = MessageStreamServer(
                listener.protocol,
                self._validate_token,
                path=self._settings.websocket_path,
            ).attach(listener)
            self._listeners[stream.key] = stream
        self._shutdown_gracefully(key, listener, stream)

    def _shutdown_gracefully(self, key: str, listener: Listener, stream: MessageStreamServer | None) -> None:
        async def close_listener() -> None:
            logger.info("closing_listener", listener=key)
            try:
                # Also closes the attached message stream
                await listener.close()
            finally:
                self._listeners.pop(key, None)
                if stream is not None:
                    self._listeners.pop(stream.key, None)
            logger.info("listener_shutdown_complete", listener=key)

        self._shutdown.on_shutdown(close_listener)

    async def _bind_all(self, transports: list[Listener]) -> None:
        ports = [resolve_port(listener.protocol, listener.default_port, self._environ) for listener in transports]
        results = await asyncio.gather(
            *(listener.listen(port) for listener, port in zip(transports, ports)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _close_listening(self) -> None:
        for listener in list(self._listeners.values()):
            if not isinstance(listener, Listener) or listener.state is not ListenerState.LISTENING:
                continue
            try:
                await listener.close()
            except Exception:
                # Keep the startup error; finish closing the rest
                logger.exception("listener_close_failed", listener=listener.protocol.value)


async def init_server(
    routers: Sequence[APIRouter],
    token_validator: TokenValidator,
    shutdown_handler: GracefulShutdownHandler,
    settings: ServerSettings | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> ListenerRegistry:
    """Build the application and start every enabled listener.

    Returns the live listener registry keyed by protocol (``http``, ``https``)
    and, with message streams enabled, their upgrade channels (``ws``, ``wss``).
    """
    settings = settings or get_settings()
    app = create_app(routers, token_validator, settings)
    orchestrator = ServerOrchestrator(app, token_validator, shutdown_handler, settings, environ=environ)
    return await orchestrator.start()
