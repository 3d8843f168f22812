"""Bearer token verification.

The server treats the verifier as an opaque, injected function: raw
``Authorization`` header in, ``Identity`` out (or an exception). It may be
sync or async. ``JwtTokenValidator`` is the default implementation.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Sequence, Union

from jose import JWTError, jwt

from ..domain.errors import AuthenticationError
from ..domain.models import Identity
from ..observability.logger import get_logger

logger = get_logger(__name__)

TokenValidator = Callable[[str], Union[Identity, Awaitable[Identity]]]

BEARER_PREFIX = "bearer "


def extract_bearer_token(header: str) -> str:
    """Strip an optional ``Bearer`` scheme from an ``Authorization`` value."""
    value = header.strip()
    if value.lower().startswith(BEARER_PREFIX):
        value = value[len(BEARER_PREFIX):].strip()
    return value


class JwtTokenValidator:
    """Verify HS/RS-signed JWTs with python-jose."""

    def __init__(
        self,
        secret: str,
        *,
        algorithms: Sequence[str] = ("HS256",),
        audience: str | None = None,
        issuer: str | None = None,
    ):
        if not secret:
            raise ValueError("secret must not be empty")
        self._secret = secret
        self._algorithms = list(algorithms)
        self._audience = audience
        self._issuer = issuer

    def __call__(self, header: str) -> Identity:
        token = extract_bearer_token(header)
        if not token:
            raise AuthenticationError("Token is not valid")

        options: dict[str, Any] = {"verify_aud": self._audience is not None}
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                options=options,
            )
        except JWTError as exc:
            raise AuthenticationError("Token is not valid") from exc

        subject = claims.get("sub")
        if not subject:
            raise AuthenticationError("Token is not valid", payload={"reason": "missing_subject"})
        return Identity(subject=str(subject), claims=claims)


async def authenticate_header(validator: TokenValidator, header: str | None) -> Identity | None:
    """Resolve an ``Authorization`` header to an identity.

    Returns ``None`` when the header is absent (anonymous). Any verifier failure
    becomes ``AuthenticationError``; a bad token is never treated as anonymous.
    """
    if not header:
        return None

    try:
        result = validator(header)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        logger.info("token_rejected", error_type=type(exc).__name__)
        raise AuthenticationError("Token is not valid") from exc

    if not isinstance(result, Identity):
        raise AuthenticationError("Token is not valid")
    return result
