"""Authentication middleware pair.

``OptionalAuthMiddleware`` runs for every HTTP request and binds a verified
identity when an ``Authorization`` header is present. ``check_auth`` is added
per route (``Depends(check_auth)``) where an identity is mandatory.
"""

from __future__ import annotations

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from ...auth.request_context import get_identity, identity_scope
from ...auth.tokens import TokenValidator, authenticate_header
from ...domain.errors import AuthenticationError, AuthorizationError
from ...domain.models import Identity
from ..errors import handle_error


class OptionalAuthMiddleware:
    def __init__(self, app: ASGIApp, token_validator: TokenValidator):
        self.app = app
        self._validate_token = token_validator

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        # Upgrade handshakes authenticate in the message-stream server
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        header = Headers(scope=scope).get("authorization")
        try:
            identity = await authenticate_header(self._validate_token, header)
        except AuthenticationError as exc:
            response = handle_error(exc)
            await response(scope, receive, send)
            return

        with identity_scope(identity):
            await self.app(scope, receive, send)


async def check_auth() -> Identity:
    identity = get_identity()
    if identity is None:
        raise AuthorizationError("No access token found, not authorized")
    return identity
