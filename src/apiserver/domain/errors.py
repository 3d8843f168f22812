"""Domain-specific errors.

Request errors carry the HTTP status they are rendered with at the error
boundary (``api.errors.handle_error``). ``StartupError`` is never rendered: it
aborts server startup.
"""

from __future__ import annotations

from typing import Any

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404


class ApplicationError(Exception):
    """Base class for errors that map to a structured error response."""

    status: int = HTTP_NOT_FOUND

    def __init__(self, message: str, *, status: int | None = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.payload = payload


class AuthenticationError(ApplicationError):
    """Raised when a supplied bearer token fails verification."""

    status = HTTP_UNAUTHORIZED


class AuthorizationError(ApplicationError):
    """Raised when a route requires an identity and none is bound."""

    status = HTTP_FORBIDDEN


class NotFoundError(ApplicationError):
    status = HTTP_NOT_FOUND


class StartupError(Exception):
    """Fatal error while launching or binding listeners."""

    def __init__(self, message: str, *, protocol: str | None = None):
        super().__init__(message)
        self.protocol = protocol
