"""Message-stream server multiplexed onto transport listeners.

The server is installed as a listener's upgrade handler: WebSocket handshakes
for ``path`` arriving on that listener's socket are answered here, everything
else goes to the HTTP application. Identity is resolved from the handshake's
``Authorization`` header before the upgrade is accepted.

Frames are JSON text. Client -> server::

    {"type": "subscribe", "channel": "orders"}
    {"type": "unsubscribe", "channel": "orders"}
    {"type": "publish", "channel": "orders", "payload": {...}}   # identity required
    {"type": "ping"}

Server -> client: ``welcome``, ``subscribed``, ``unsubscribed``, ``message``,
``pong`` and ``error`` frames.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocket

from ..auth.request_context import identity_scope
from ..auth.tokens import TokenValidator, authenticate_header
from ..domain.errors import AuthenticationError
from ..domain.models import Identity, ListenerState, Protocol
from ..observability.logger import get_logger
from ..transport.listener import Listener

logger = get_logger(__name__)

POLICY_VIOLATION = 1008
GOING_AWAY = 1001


@dataclass
class _StreamClient:
    client_id: str
    websocket: WebSocket
    identity: Identity | None
    channels: set[str] = field(default_factory=set)

    async def send(self, frame: dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(frame))

    async def send_error(self, message: str) -> None:
        await self.send({"type": "error", "message": message})


class MessageStreamServer:
    """Publish/subscribe channels over WebSocket, sharing a listener's socket."""

    def __init__(self, protocol: Protocol, token_validator: TokenValidator, *, path: str = "/ws"):
        self.protocol = protocol
        self.key = protocol.upgrade_key
        self.path = _normalize_path(path)
        self._validate_token = token_validator
        self._clients: dict[str, _StreamClient] = {}
        self._listener: Listener | None = None
        self._closed = False

    @property
    def state(self) -> ListenerState:
        if self._closed:
            return ListenerState.CLOSED
        if self._listener is None:
            return ListenerState.CREATED
        return self._listener.state

    @property
    def port(self) -> int | None:
        return self._listener.port if self._listener else None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def attach(self, listener: Listener) -> MessageStreamServer:
        if listener.protocol is not self.protocol:
            raise ValueError(f"cannot attach {self.key} stream to a {listener.protocol.value} listener")
        listener.attach_upgrade(self)
        self._listener = listener
        return self

    def handles(self, scope: Scope) -> bool:
        return _normalize_path(scope.get("path", "")) == self.path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        websocket = WebSocket(scope, receive=receive, send=send)
        if self._closed:
            await websocket.close(code=GOING_AWAY, reason="server_shutdown")
            return

        try:
            identity = await authenticate_header(self._validate_token, websocket.headers.get("authorization"))
        except AuthenticationError as exc:
            logger.info("stream_handshake_rejected", stream=self.key, reason=exc.message)
            await websocket.close(code=POLICY_VIOLATION, reason=exc.message)
            return

        await websocket.accept()
        client = _StreamClient(client_id=uuid.uuid4().hex, websocket=websocket, identity=identity)
        self._clients[client.client_id] = client

        with identity_scope(identity), structlog.contextvars.bound_contextvars(client_id=client.client_id):
            logger.info("stream_client_connected", stream=self.key, clients=self.client_count)
            try:
                await client.send(
                    {
                        "type": "welcome",
                        "client_id": client.client_id,
                        "subject": identity.subject if identity else None,
                    }
                )
                await self._serve(client)
            finally:
                self._clients.pop(client.client_id, None)
                logger.info("stream_client_disconnected", stream=self.key, clients=self.client_count)

    async def publish(self, channel: str, payload: Any, *, sender: str | None = None) -> int:
        """Fan ``payload`` out to every subscriber of ``channel``; returns deliveries."""
        text = json.dumps({"type": "message", "channel": channel, "payload": payload, "sender": sender})
        delivered = 0
        for client in list(self._clients.values()):
            if channel not in client.channels:
                continue
            try:
                await client.websocket.send_text(text)
                delivered += 1
            except Exception as exc:
                # Client disconnected unexpectedly
                logger.info("stream_delivery_failed", client_id=client.client_id, error_type=type(exc).__name__)
                self._clients.pop(client.client_id, None)
        return delivered

    async def close(self) -> None:
        """Refuse new handshakes and close every client with 1001 (going away)."""
        if self._closed:
            return
        self._closed = True
        clients = list(self._clients.values())
        for client in clients:
            try:
                await client.websocket.close(code=GOING_AWAY, reason="server_shutdown")
            except (RuntimeError, OSError) as exc:
                logger.debug("stream_client_close_failed", client_id=client.client_id, error=str(exc))
        logger.info("stream_server_closed", stream=self.key, clients=len(clients))

    async def _serve(self, client: _StreamClient) -> None:
        while True:
            message = await client.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            text = message.get("text")
            if text is None:
                await client.send_error("Binary frames are not supported")
                continue
            try:
                frame = json.loads(text)
            except json.JSONDecodeError:
                await client.send_error("Malformed message")
                continue
            if not isinstance(frame, dict):
                await client.send_error("Malformed message")
                continue

            await self._dispatch(client, frame)

    async def _dispatch(self, client: _StreamClient, frame: dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "ping":
            await client.send({"type": "pong"})
            return
        if kind not in ("subscribe", "unsubscribe", "publish"):
            await client.send_error(f"Unsupported message type: {kind}")
            return

        channel = frame.get("channel")
        if not isinstance(channel, str) or not channel:
            await client.send_error("channel is required")
            return

        if kind == "subscribe":
            client.channels.add(channel)
            await client.send({"type": "subscribed", "channel": channel})
        elif kind == "unsubscribe":
            client.channels.discard(channel)
            await client.send({"type": "unsubscribed", "channel": channel})
        elif client.identity is None:
            await client.send_error("No access token found, not authorized")
        else:
            try:
                await self.publish(channel, frame.get("payload"), sender=client.identity.subject)
            except TypeError:
                await client.send_error("payload is not serializable")


def _normalize_path(path: str) -> str:
    return path.rstrip("/") or "/"
