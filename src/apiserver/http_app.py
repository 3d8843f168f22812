"""FastAPI application factory shared by every listener."""

from __future__ import annotations

from typing import Sequence

from fastapi import APIRouter, FastAPI
from starlette.middleware.gzip import GZipMiddleware

from .api.errors import ErrorBoundaryMiddleware, install_error_handlers
from .api.middlewares.auth import OptionalAuthMiddleware
from .api.middlewares.security import SecurityHeadersMiddleware
from .auth.tokens import TokenValidator
from .config.settings import ServerSettings, get_settings


def create_app(
    routers: Sequence[APIRouter],
    token_validator: TokenValidator,
    settings: ServerSettings | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.service_name, version="0.1.0")

    install_error_handlers(app)

    # Last added runs first: gzip -> security headers -> error boundary -> auth
    app.add_middleware(OptionalAuthMiddleware, token_validator=token_validator)
    app.add_middleware(ErrorBoundaryMiddleware)
    if settings.security_headers_enabled:
        app.add_middleware(SecurityHeadersMiddleware)
    if settings.compression_enabled:
        app.add_middleware(GZipMiddleware, minimum_size=settings.compression_minimum_size)

    for router in routers:
        app.include_router(router)

    return app
