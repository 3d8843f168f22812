"""Request-scoped identity storage.

The identity lives in a ``ContextVar``. Every request (and every message-stream
connection) is handled in its own task with its own copy of the context, so
concurrent requests never observe each other's binding.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

import structlog

from ..domain.models import Identity

_current_identity: ContextVar[Identity | None] = ContextVar("current_identity", default=None)


def set_identity(identity: Identity) -> Token:
    return _current_identity.set(identity)


def reset_identity(token: Token) -> None:
    _current_identity.reset(token)


def get_identity() -> Identity | None:
    return _current_identity.get()


def has_identity() -> bool:
    return _current_identity.get() is not None


@contextmanager
def identity_scope(identity: Identity | None) -> Iterator[Identity | None]:
    """Bind ``identity`` (or nothing) for the duration of the block."""
    if identity is None:
        yield None
        return

    token = set_identity(identity)
    try:
        with structlog.contextvars.bound_contextvars(subject=identity.subject):
            yield identity
    finally:
        reset_identity(token)
