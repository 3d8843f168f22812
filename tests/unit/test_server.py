from __future__ import annotations

import asyncio
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from apiserver.api.routes import router
from apiserver.config.settings import ServerSettings
from apiserver.domain.errors import StartupError
from apiserver.domain.models import Identity, ListenerState, Protocol, ServerState
from apiserver.http_app import create_app
from apiserver.lifecycle.shutdown import GracefulShutdownHandler
from apiserver.server import ServerOrchestrator, init_server
from apiserver.transport.launchers import ProtocolLauncher
from apiserver.transport.listener import Listener

GOOD = "Bearer good-token"


def stub_validator(header: str) -> Identity:
    if header == GOOD:
        return Identity(subject="alice")
    raise ValueError("unknown token")


def _settings(**overrides: object) -> ServerSettings:
    values: dict[str, object] = {
        "host": "127.0.0.1",
        "http_enabled": True,
        "http_port": 0,
        "https_enabled": False,
        "https_port": 0,
        "websocket_enabled": False,
        "shutdown_timeout_seconds": 5,
    }
    values.update(overrides)
    return ServerSettings(**values)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _self_signed(tmp_path: Path) -> tuple[str, str]:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(cert_path), str(key_path)


def test_plaintext_only_startup_serves_optional_and_enforced_routes() -> None:
    async def scenario() -> None:
        shutdown = GracefulShutdownHandler()
        registry = await init_server([router], stub_validator, shutdown, _settings(), environ={})

        assert list(registry) == ["http"]
        listener = registry["http"]
        assert listener.state is ListenerState.LISTENING
        assert shutdown.hook_count == 1

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{listener.port}", trust_env=False) as client:
            health = await client.get("/healthz")
            guarded = await client.get("/api/v1/me")
            authorized = await client.get("/api/v1/me", headers={"Authorization": GOOD})

        assert health.status_code == 200
        assert health.json() == {"status": "ok"}
        assert guarded.status_code == 403
        assert guarded.json() == {"status": "error", "message": "No access token found, not authorized"}
        assert authorized.json()["subject"] == "alice"

        await shutdown.shutdown()
        assert listener.state is ListenerState.CLOSED
        assert registry == {}

    asyncio.run(scenario())


def test_message_streams_add_upgrade_variant_to_registry() -> None:
    async def scenario() -> None:
        shutdown = GracefulShutdownHandler()
        registry = await init_server(
            [router], stub_validator, shutdown, _settings(websocket_enabled=True), environ={}
        )

        assert sorted(registry) == ["http", "ws"]
        stream = registry["ws"]
        assert stream.state is ListenerState.LISTENING
        assert stream.port == registry["http"].port
        # One hook per transport; the stream closes with its parent
        assert shutdown.hook_count == 1

        await shutdown.shutdown()
        assert stream.state is ListenerState.CLOSED
        assert registry == {}

    asyncio.run(scenario())


def test_non_numeric_env_override_falls_back_to_configured_port() -> None:
    port = _free_port()

    async def scenario() -> None:
        shutdown = GracefulShutdownHandler()
        registry = await init_server(
            [router], stub_validator, shutdown, _settings(http_port=port), environ={"HTTP_PORT": "not-a-port"}
        )
        try:
            assert registry["http"].port == port
        finally:
            await shutdown.shutdown()

    asyncio.run(scenario())


def test_valid_env_override_wins_over_configured_port() -> None:
    override = _free_port()

    async def scenario() -> None:
        shutdown = GracefulShutdownHandler()
        registry = await init_server(
            [router], stub_validator, shutdown, _settings(http_port=1), environ={"HTTP_PORT": str(override)}
        )
        try:
            assert registry["http"].port == override
        finally:
            await shutdown.shutdown()

    asyncio.run(scenario())


def test_https_listener_serves_tls(tmp_path: Path) -> None:
    cert_path, key_path = _self_signed(tmp_path)

    async def scenario() -> None:
        shutdown = GracefulShutdownHandler()
        settings = _settings(
            http_enabled=False,
            https_enabled=True,
            https_cert_path=cert_path,
            https_key_path=key_path,
            websocket_enabled=True,
        )
        registry = await init_server([router], stub_validator, shutdown, settings, environ={})
        assert sorted(registry) == ["https", "wss"]

        port = registry["https"].port
        base_url = f"https://127.0.0.1:{port}"
        async with httpx.AsyncClient(base_url=base_url, verify=False, trust_env=False) as client:
            response = await client.get("/healthz")
        assert response.status_code == 200
        assert "strict-transport-security" in response.headers

        await shutdown.shutdown()

    asyncio.run(scenario())


def test_missing_certificate_fails_startup_before_anything_binds(tmp_path: Path) -> None:
    async def scenario() -> ServerOrchestrator:
        settings = _settings(
            https_enabled=True,
            https_cert_path=str(tmp_path / "absent-cert.pem"),
            https_key_path=str(tmp_path / "absent-key.pem"),
        )
        app = create_app([router], stub_validator, settings)
        orchestrator = ServerOrchestrator(app, stub_validator, GracefulShutdownHandler(), settings, environ={})
        with pytest.raises(StartupError):
            await orchestrator.start()
        return orchestrator

    orchestrator = asyncio.run(scenario())
    assert orchestrator.state is ServerState.FAILED
    http_listener = orchestrator.listeners["http"]
    assert isinstance(http_listener, Listener)
    assert http_listener.state is ListenerState.CREATED


def test_bind_failure_closes_listeners_that_already_started(tmp_path: Path) -> None:
    cert_path, key_path = _self_signed(tmp_path)

    async def scenario() -> ServerOrchestrator:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as occupied:
            occupied.bind(("127.0.0.1", 0))
            occupied.listen(1)
            settings = _settings(
                http_port=occupied.getsockname()[1],
                https_enabled=True,
                https_cert_path=cert_path,
                https_key_path=key_path,
            )
            app = create_app([router], stub_validator, settings)
            orchestrator = ServerOrchestrator(app, stub_validator, GracefulShutdownHandler(), settings, environ={})
            with pytest.raises(StartupError):
                await orchestrator.start()
        return orchestrator

    orchestrator = asyncio.run(scenario())
    assert orchestrator.state is ServerState.FAILED
    assert orchestrator.listeners["https"].state is ListenerState.CLOSED
    assert orchestrator.listeners["http"].state is not ListenerState.LISTENING


def test_start_cannot_run_twice() -> None:
    async def scenario() -> None:
        shutdown = GracefulShutdownHandler()
        settings = _settings()
        app = create_app([router], stub_validator, settings)
        orchestrator = ServerOrchestrator(app, stub_validator, shutdown, settings, environ={})
        await orchestrator.start()
        try:
            assert orchestrator.state is ServerState.READY
            with pytest.raises(RuntimeError):
                await orchestrator.start()
        finally:
            await shutdown.shutdown()

    asyncio.run(scenario())


class _CloseFailsListener(Listener):
    async def close(self) -> None:
        await super().close()
        raise RuntimeError("serve task crashed")


class _ListenThenFailListener(Listener):
    async def listen(self, port: int) -> Listener:
        await super().listen(port)
        raise StartupError(f"{self.protocol.value} listener lost its socket", protocol=self.protocol.value)


class _StaticLauncher(ProtocolLauncher):
    def __init__(self, protocol: Protocol, listener_cls: type[Listener]):
        self.protocol = protocol
        self._listener_cls = listener_cls

    def is_enabled(self, settings: ServerSettings) -> bool:
        return True

    def default_port(self, settings: ServerSettings) -> int:
        return 0

    def create_listener(self, app, settings: ServerSettings) -> Listener:
        return self._listener_cls(self.protocol, app, settings, default_port=0)


def test_close_error_during_failed_startup_keeps_startup_error_and_closes_the_rest() -> None:
    async def scenario() -> ServerOrchestrator:
        settings = _settings()
        app = create_app([router], stub_validator, settings)
        launchers = (
            _StaticLauncher(Protocol.HTTPS, _CloseFailsListener),
            _StaticLauncher(Protocol.HTTP, _ListenThenFailListener),
        )
        orchestrator = ServerOrchestrator(
            app, stub_validator, GracefulShutdownHandler(), settings, launchers=launchers, environ={}
        )
        with pytest.raises(StartupError, match="lost its socket"):
            await orchestrator.start()
        return orchestrator

    orchestrator = asyncio.run(scenario())
    assert orchestrator.state is ServerState.FAILED
    assert orchestrator.listeners["https"].state is ListenerState.CLOSED
    assert orchestrator.listeners["http"].state is ListenerState.CLOSED
