"""Port resolution: ``<PROTOCOL>_PORT`` overrides the configured default."""

from __future__ import annotations

import os
from typing import Mapping

from ..domain.models import Protocol
from ..observability.logger import get_logger

logger = get_logger(__name__)

MAX_PORT = 65535


def get_env_port(protocol: Protocol, environ: Mapping[str, str] | None = None) -> int | None:
    """Return the override port, or None when unset or not a positive integer."""
    env = os.environ if environ is None else environ
    raw = env.get(protocol.env_port_name)
    if raw is None or not raw.strip():
        return None

    try:
        port = int(raw.strip())
    except ValueError:
        port = 0
    if not 0 < port <= MAX_PORT:
        logger.warning(
            "invalid_port_override",
            variable=protocol.env_port_name,
            value=raw,
        )
        return None
    return port


def resolve_port(protocol: Protocol, default_port: int, environ: Mapping[str, str] | None = None) -> int:
    override = get_env_port(protocol, environ)
    return override if override is not None else default_port
