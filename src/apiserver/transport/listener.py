"""uvicorn-backed transport listener.

One ``Listener`` per protocol. All listeners serve the same ASGI application;
each one owns its socket and accept loop. Signals are never captured here:
the graceful shutdown coordinator decides when listeners close.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Iterator, Protocol as TypingProtocol

import uvicorn
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config.settings import ServerSettings
from ..domain.errors import StartupError
from ..domain.models import ListenerState, Protocol
from ..observability.logger import get_logger

logger = get_logger(__name__)


class UpgradeHandler(TypingProtocol):
    """Intercepts WebSocket handshakes arriving on a listener."""

    def handles(self, scope: Scope) -> bool: ...

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None: ...

    async def close(self) -> None: ...


class _UpgradeDispatcher:
    """ASGI entry point of a listener: upgrade handshakes first, then the app."""

    def __init__(self, app: ASGIApp):
        self.app = app
        self.upgrade_handler: UpgradeHandler | None = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        handler = self.upgrade_handler
        if scope["type"] == "websocket" and handler is not None and handler.handles(scope):
            await handler(scope, receive, send)
            return
        await self.app(scope, receive, send)


class _ListenerServer(uvicorn.Server):
    def __init__(self, config: uvicorn.Config):
        super().__init__(config)
        self.ready = asyncio.Event()

    def install_signal_handlers(self) -> None:
        # uvicorn < 0.29
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if not self.should_exit:
            self.ready.set()


class Listener:
    """A bound, accepting endpoint for one protocol."""

    def __init__(
        self,
        protocol: Protocol,
        app: ASGIApp,
        settings: ServerSettings,
        *,
        default_port: int,
        ssl_certfile: str | None = None,
        ssl_keyfile: str | None = None,
    ):
        self.protocol = protocol
        self.default_port = default_port
        self._host = settings.host
        self._dispatcher = _UpgradeDispatcher(app)
        self._config = uvicorn.Config(
            app=self._dispatcher,
            host=settings.host,
            port=default_port,
            interface="asgi3",
            lifespan="off",
            loop="asyncio",
            log_level="warning",  # structlog is the primary logger
            ssl_certfile=ssl_certfile,
            ssl_keyfile=ssl_keyfile,
            timeout_graceful_shutdown=settings.shutdown_timeout_seconds or None,
        )
        try:
            # Loads the TLS context now so bad key material fails at launch
            self._config.load()
        except OSError as exc:
            raise StartupError(
                f"cannot configure {protocol.value} listener: {exc}", protocol=protocol.value
            ) from exc

        self._server = _ListenerServer(self._config)
        self._socket: socket.socket | None = None
        self._port: int | None = None
        self._task: asyncio.Task | None = None
        self._state = ListenerState.CREATED

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def asgi_app(self) -> ASGIApp:
        return self._dispatcher

    @property
    def upgrade_handler(self) -> UpgradeHandler | None:
        return self._dispatcher.upgrade_handler

    def attach_upgrade(self, handler: UpgradeHandler) -> None:
        if self._state in (ListenerState.CLOSING, ListenerState.CLOSED):
            raise RuntimeError(f"{self.protocol.value} listener is {self._state.value.lower()}")
        if self.upgrade_handler is not None:
            raise RuntimeError(f"{self.protocol.value} listener already has an upgrade handler")
        self._dispatcher.upgrade_handler = handler

    async def listen(self, port: int) -> Listener:
        """Bind ``port`` and return once the accept loop is running."""
        if self._state is not ListenerState.CREATED:
            raise RuntimeError(f"{self.protocol.value} listener already started")

        self._socket = self._bind(port)
        self._port = self._socket.getsockname()[1]
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]),
            name=f"listener-{self.protocol.value}",
        )
        ready = asyncio.create_task(self._server.ready.wait())
        done, _ = await asyncio.wait({self._task, ready}, return_when=asyncio.FIRST_COMPLETED)
        if ready not in done:
            ready.cancel()
            error = None if self._task.cancelled() else self._task.exception()
            self._socket.close()
            self._state = ListenerState.CLOSED
            raise StartupError(
                f"{self.protocol.value} listener failed to start on port {port}",
                protocol=self.protocol.value,
            ) from error

        self._state = ListenerState.LISTENING
        logger.info("listener_listening", protocol=self.protocol.value, host=self._host, port=self.port)
        return self

    async def close(self) -> None:
        """Stop accepting, drain in-flight connections, release the socket."""
        if self._state is ListenerState.CLOSED:
            return
        if self._state is ListenerState.CLOSING:
            if self._task is not None:
                await asyncio.shield(self._task)
            return

        self._state = ListenerState.CLOSING
        try:
            if self.upgrade_handler is not None:
                await self.upgrade_handler.close()
            if self._task is not None:
                self._server.should_exit = True
                await self._task
        finally:
            if self._socket is not None:
                self._socket.close()
            self._state = ListenerState.CLOSED
            logger.info("listener_closed", protocol=self.protocol.value)

    def _bind(self, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        sock = socket.socket(family=family, type=socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, port))
        except OSError as exc:
            sock.close()
            raise StartupError(
                f"cannot bind {self.protocol.value} listener to {self._host}:{port}: {exc}",
                protocol=self.protocol.value,
            ) from exc
        sock.set_inheritable(True)
        return sock
