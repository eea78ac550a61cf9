"""Error taxonomy for the uploader service.

Every failure a request can surface is an ``UploaderError`` subclass that
carries its HTTP status. ``register_exception_handlers`` turns them into the
``{"error": "<message>"}`` JSON body clients expect; anything else becomes a
generic 500 whose details only reach the log.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class UploaderError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code: int = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(UploaderError):
    """No file supplied, blocked MIME type, or malformed parameter."""
    status_code = 400


class AuthorizationError(UploaderError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class NotFoundError(UploaderError):
    status_code = 404

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class SizeLimitError(UploaderError):
    status_code = 413


class RateLimitError(UploaderError):
    status_code = 429

    def __init__(self, message: str = "Too many requests") -> None:
        super().__init__(message)


class InternalError(UploaderError):
    """Storage or index failure, or identifier collisions exhausted."""
    status_code = 500


class DuplicateRecordError(InternalError):
    """An index insert hit an id that is already present."""


def error_response(exc: UploaderError, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error contract on *app*."""

    @app.exception_handler(UploaderError)
    async def _uploader_error(request: Request, exc: UploaderError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # Unmatched routes and wrong methods keep their status but use our body.
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(InternalError())
