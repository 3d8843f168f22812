"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Application settings loaded from environment variables (prefix ``APISERVER_``).

    The bare ``HTTP_PORT`` / ``HTTPS_PORT`` variables are not settings: they are
    per-protocol overrides resolved at bind time (see ``transport.ports``).
    """

    # Service
    service_name: str = "apiserver"
    host: str = "0.0.0.0"

    # Plaintext transport
    http_enabled: bool = True
    http_port: int = 8080

    # Encrypted transport
    https_enabled: bool = False
    https_port: int = 8443
    https_cert_path: str | None = None
    https_key_path: str | None = None

    # Message streams (WebSocket upgrade on the same listeners)
    websocket_enabled: bool = False
    websocket_path: str = "/ws"

    # Seconds to wait for in-flight connections on close; 0 waits forever
    shutdown_timeout_seconds: int = 30

    # HTTP hardening
    compression_enabled: bool = True
    compression_minimum_size: int = 1000
    security_headers_enabled: bool = True

    # Bearer token verification (default JWT verifier)
    jwt_secret: str | None = None
    jwt_algorithms: list[str] = ["HS256"]
    jwt_audience: str | None = None
    jwt_issuer: str | None = None

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="APISERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def validate(self) -> None:
        if self.http_port <= 0:
            raise ValueError("http_port must be > 0")
        if self.https_port <= 0:
            raise ValueError("https_port must be > 0")
        if self.https_enabled and not (self.https_cert_path and self.https_key_path):
            raise ValueError("https_cert_path and https_key_path are required when https is enabled")
        if not self.websocket_path.startswith("/"):
            raise ValueError("websocket_path must start with '/'")
        if self.shutdown_timeout_seconds < 0:
            raise ValueError("shutdown_timeout_seconds must be >= 0")
        if self.compression_minimum_size < 0:
            raise ValueError("compression_minimum_size must be >= 0")
        if not self.jwt_algorithms:
            raise ValueError("jwt_algorithms must not be empty")


_settings: ServerSettings | None = None


def get_settings() -> ServerSettings:
    global _settings
    if _settings is None:
        _settings = ServerSettings()
        _settings.validate()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
