"""Single error-handling boundary.

Every per-request failure leaves the server as
``{"status": "error", "message": ..., "payload"?: ...}``.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..domain.errors import HTTP_NOT_FOUND, ApplicationError
from ..observability.logger import get_logger

logger = get_logger(__name__)


def error_body(message: str, payload: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "error", "message": message}
    if payload is not None:
        body["payload"] = jsonable_encoder(payload)
    return body


def handle_error(exc: Exception) -> JSONResponse:
    if isinstance(exc, ApplicationError):
        status, payload = exc.status, exc.payload
    elif isinstance(exc, StarletteHTTPException):
        status, payload = exc.status_code, None
    else:
        status, payload = HTTP_NOT_FOUND, None

    if isinstance(exc, StarletteHTTPException):
        message = str(exc.detail)
    else:
        message = str(exc) or type(exc).__name__ or "Unknown error"

    log_fields = {"status": status, "error_type": type(exc).__name__, "message": message}
    if isinstance(exc, (ApplicationError, StarletteHTTPException)):
        logger.error("request_failed", **log_fields)
    else:
        logger.error("request_failed", exc_info=exc, **log_fields)
    headers = getattr(exc, "headers", None)
    return JSONResponse(status_code=status, content=error_body(message, payload), headers=headers)


async def _application_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return handle_error(exc)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_validation_failed", path=request.url.path)
    return JSONResponse(status_code=422, content=error_body("Request validation failed", exc.errors()))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApplicationError, _application_error_handler)
    app.add_exception_handler(StarletteHTTPException, _application_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)


class ErrorBoundaryMiddleware:
    """Render exceptions that escaped the route's exception handlers."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            if response_started:
                raise
            response = handle_error(exc)
            await response(scope, receive, send)
