"""Domain exceptions and centralized FastAPI error handlers."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class IbexError(Exception):
    """Base exception carrying the HTTP status code to answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(IbexError):
    status_code = 401


class PermissionDeniedError(IbexError):
    status_code = 403


class ValidationError(IbexError):
    """Request is well-formed JSON but semantically invalid."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(IbexError):
    status_code = 404


class RateLimitedError(IbexError):
    status_code = 429

    def __init__(self, message: str = "Too many requests, please try again later"):
        super().__init__(message)


def error_response(exc: IbexError) -> JSONResponse:
    """Render a domain error as the API's {"error": ...} JSON body."""
    body = {"error": str(exc)}
    if isinstance(exc, ValidationError) and exc.details:
        body.update(exc.details)
    return JSONResponse(body, status_code=exc.status_code)


def register_error_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers on the FastAPI app."""

    @app.exception_handler(IbexError)
    async def handle_ibex_error(_request: Request, exc: IbexError):
        return error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(_request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
