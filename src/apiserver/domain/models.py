"""Framework-agnostic domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class Protocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"

    @property
    def upgrade_key(self) -> str:
        """Registry key of the message-stream channel multiplexed on this protocol."""
        return _UPGRADE_KEYS[self]

    @property
    def env_port_name(self) -> str:
        return f"{self.value.upper()}_PORT"


_UPGRADE_KEYS = {
    Protocol.HTTP: "ws",
    Protocol.HTTPS: "wss",
}


class ListenerState(str, Enum):
    CREATED = "CREATED"
    LISTENING = "LISTENING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class ServerState(str, Enum):
    CONFIGURING = "CONFIGURING"
    LAUNCHING = "LAUNCHING"
    BINDING = "BINDING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Identity:
    """Verified bearer token. Lives for a single request."""

    subject: str
    claims: Mapping[str, Any] = field(default_factory=dict)
