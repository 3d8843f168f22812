"""Operational routes shipped with the server."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..auth.request_context import get_identity
from ..domain.models import Identity
from .middlewares.auth import check_auth

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/api/v1/session")
async def session() -> dict[str, Any]:
    identity = get_identity()
    return {
        "authenticated": identity is not None,
        "subject": identity.subject if identity else None,
    }


@router.get("/api/v1/me")
async def me(identity: Identity = Depends(check_auth)) -> dict[str, Any]:
    return {"subject": identity.subject, "claims": dict(identity.claims)}
