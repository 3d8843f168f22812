"""Protocol launchers.

A closed set of variants, one per ``Protocol``. Each decides from settings
whether it is enabled and which port it binds by default, and creates an
unbound ``Listener`` around the shared application.
"""

from __future__ import annotations

from pathlib import Path

from starlette.types import ASGIApp

from ..config.settings import ServerSettings
from ..domain.errors import StartupError
from ..domain.models import Protocol
from .listener import Listener


class ProtocolLauncher:
    protocol: Protocol

    def is_enabled(self, settings: ServerSettings) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def default_port(self, settings: ServerSettings) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    def create_listener(self, app: ASGIApp, settings: ServerSettings) -> Listener:  # pragma: no cover - interface
        raise NotImplementedError


class PlaintextLauncher(ProtocolLauncher):
    protocol = Protocol.HTTP

    def is_enabled(self, settings: ServerSettings) -> bool:
        return settings.http_enabled

    def default_port(self, settings: ServerSettings) -> int:
        return settings.http_port

    def create_listener(self, app: ASGIApp, settings: ServerSettings) -> Listener:
        return Listener(self.protocol, app, settings, default_port=self.default_port(settings))


class EncryptedLauncher(ProtocolLauncher):
    protocol = Protocol.HTTPS

    def is_enabled(self, settings: ServerSettings) -> bool:
        return settings.https_enabled

    def default_port(self, settings: ServerSettings) -> int:
        return settings.https_port

    def create_listener(self, app: ASGIApp, settings: ServerSettings) -> Listener:
        cert_path = _readable_file(settings.https_cert_path, "certificate")
        key_path = _readable_file(settings.https_key_path, "private key")
        return Listener(
            self.protocol,
            app,
            settings,
            default_port=self.default_port(settings),
            ssl_certfile=str(cert_path),
            ssl_keyfile=str(key_path),
        )


def _readable_file(path: str | None, what: str) -> Path:
    if not path:
        raise StartupError(f"https {what} path is not configured", protocol=Protocol.HTTPS.value)
    file_path = Path(path)
    try:
        if not file_path.read_bytes():
            raise StartupError(f"https {what} file is empty: {path}", protocol=Protocol.HTTPS.value)
    except OSError as exc:
        raise StartupError(f"cannot read https {what} file {path}: {exc}", protocol=Protocol.HTTPS.value) from exc
    return file_path


DEFAULT_LAUNCHERS: tuple[ProtocolLauncher, ...] = (PlaintextLauncher(), EncryptedLauncher())
