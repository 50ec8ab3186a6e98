"""
Error Taxonomy
==============

Every failure the application reports to a client is one of the errors
below. Each carries the HTTP status it maps to and a stable ``code`` that
the realtime gateway sends in ``error`` events.

REST handlers raise these directly; ``register_exception_handlers`` turns
them into ``{"detail": ...}`` JSON responses.
"""

import logging
import os
import traceback

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ENVIRONMENT = os.getenv("ENVIRONMENT", "production")


class TrackWiseError(Exception):
    """Base class for all errors surfaced to clients"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "server_error"
    default_message = "Server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(TrackWiseError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_message = "Authentication required"


class TokenExpired(Unauthenticated):
    code = "token_expired"
    default_message = "Token expired"


class TokenMalformed(Unauthenticated):
    code = "token_malformed"
    default_message = "Invalid token"


class InvalidArgument(TrackWiseError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_argument"
    default_message = "Invalid argument"


class NotFound(TrackWiseError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Not found"


class AccessDenied(TrackWiseError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "access_denied"
    default_message = "Access denied"


class Conflict(TrackWiseError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    default_message = "Record already exists"


class IsolationBreach(TrackWiseError):
    """A scoped result contained a record owned by someone else"""

    code = "server_error"
    default_message = "Data isolation breach detected"


class ProgrammerError(TrackWiseError):
    """The owner-scoping helpers were used without a resolved identity"""

    code = "server_error"
    default_message = "Owner scope used without a resolved identity"


class ServerError(TrackWiseError):
    pass


def client_message(error: TrackWiseError) -> str:
    """Message safe to show to a client; server-side failures stay generic"""
    if error.status_code >= 500:
        return ServerError.default_message
    return error.message


def is_development() -> bool:
    return ENVIRONMENT == "development"


async def trackwise_error_handler(request: Request, exc: TrackWiseError):
    if isinstance(exc, IsolationBreach):
        logger.critical("SECURITY: %s on %s %s", exc.message, request.method, request.url.path)
    elif exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)

    body = {"detail": client_message(exc)}
    if exc.status_code >= 500 and is_development() and not isinstance(exc, IsolationBreach):
        body["error"] = exc.message

    headers = None
    if isinstance(exc, Unauthenticated):
        headers = {"WWW-Authenticate": "Bearer"}

    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    detail = f"{field}: {message}" if field else message
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"detail": "Something went wrong on the server"}
    if is_development():
        body["error"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(TrackWiseError, trackwise_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
