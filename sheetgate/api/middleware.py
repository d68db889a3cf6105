"""API layer — Request middleware.

- Request ID injection (X-Request-ID header)
- Structured access logging
- Global exception handler → clean ErrorResponse
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from sheetgate.api.schemas import ErrorResponse
from sheetgate.exceptions import (
    AlreadyPendingError,
    ConversationNotFoundError,
    InvalidTransitionError,
    ModelUnavailableError,
    NothingToUndoError,
    SheetgateError,
    ToolCallParseError,
)
from sheetgate.logging import get_logger

log = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a unique X-Request-ID to every request and response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log each request with timing information."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - start) * 1000, 2)

        log.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=getattr(request.state, "request_id", None),
        )
        return response


# Most specific first: the first matching class wins.
_STATUS_MAP: list[tuple[type[SheetgateError], int, str]] = [
    (AlreadyPendingError, 409, "already_pending"),
    (InvalidTransitionError, 409, "invalid_transition"),
    (NothingToUndoError, 409, "nothing_to_undo"),
    (ConversationNotFoundError, 404, "not_found"),
    (ModelUnavailableError, 502, "model_unavailable"),
    (ToolCallParseError, 422, "parse_error"),
]


def status_for(exc: SheetgateError) -> tuple[int, str]:
    for exc_type, status_code, code in _STATUS_MAP:
        if isinstance(exc, exc_type):
            return status_code, code
    return 500, "internal_error"


def build_error_handler() -> Any:
    """Return a FastAPI exception handler for SheetgateError subclasses."""

    async def handler(request: Request, exc: SheetgateError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        status_code, code = status_for(exc)
        if status_code >= 500:
            log.error("request_failed", path=request.url.path, error=exc.message, code=code)

        body = ErrorResponse(
            error=exc.message,
            code=code,
            detail=exc.context or None,
            request_id=request_id,
        )
        return JSONResponse(status_code=status_code, content=body.model_dump())

    return handler
