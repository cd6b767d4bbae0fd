"""API error handling with consistent error responses.

Status code mapping:
- ``InvalidGrantError`` → 400 (the authorization must be redone)
- ``CalendarAuthError`` → 401
- ``RemoteCalendarError`` / ``TokenRefreshError`` → 502 Bad Gateway
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from timeflow.api.models import ErrorDetail, ErrorResponse
from timeflow.core.http import sanitize_error
from timeflow.errors import (
    CalendarAuthError,
    InvalidGrantError,
    RemoteCalendarError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, provider: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, provider=provider))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_auth_error(request: Request, exc: CalendarAuthError) -> JSONResponse:
    logger.info("Calendar auth error on %s: %s", request.url.path, type(exc).__name__)
    message = sanitize_error(exc)
    if isinstance(exc, InvalidGrantError):
        return _error(400, "INVALID_GRANT", message, exc.provider)
    if isinstance(exc, TokenRefreshError):
        return _error(502, "TOKEN_REFRESH_FAILED", message, exc.provider)
    return _error(401, "NOT_AUTHORIZED", message, exc.provider)


async def _handle_remote_error(request: Request, exc: RemoteCalendarError) -> JSONResponse:
    logger.warning("Remote calendar error on %s: %s", request.url.path, exc)
    return _error(502, "REMOTE_CALENDAR_ERROR", sanitize_error(exc), exc.provider)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalendarAuthError, _handle_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(RemoteCalendarError, _handle_remote_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
