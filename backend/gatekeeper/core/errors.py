"""
Error taxonomy and the central exception handlers.

Route handlers raise these errors and never catch them; the handlers
registered here turn them (and a few infrastructure errors) into the
``{"success": false, "message": ...}`` envelope.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import ExpiredSignatureError, JWTError
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class APIError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Something went wrong, please try again later"
    code: Optional[str] = None

    def __init__(self, message: Optional[str] = None, headers: Optional[dict] = None):
        self.message = message or self.default_message
        self.headers = headers
        super().__init__(self.message)


class BadRequestError(APIError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"


class UnauthenticatedError(APIError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication invalid"


class InvalidTokenError(UnauthenticatedError):
    default_message = "Invalid token. Please log in again."
    code = "token_invalid"


class ExpiredTokenError(UnauthenticatedError):
    default_message = "Token has expired. Please request a new one."
    code = "token_expired"


class ForbiddenError(APIError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized to access this route"


class NotFoundError(APIError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ConflictError(APIError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class TooManyRequestsError(APIError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests, please try again later"


def error_response(status_code: int, message: str, code: Optional[str] = None,
                   headers: Optional[dict] = None) -> JSONResponse:
    body = {"success": False, "message": message}
    if code:
        body["code"] = code
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}: {exc.message}")
    return error_response(exc.status_code, exc.message, exc.code, exc.headers)


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    # Unique index violation, e.g. two registrations racing for one email
    logger.warning(f"Integrity error on {request.url.path}: {exc.orig}")
    return error_response(status.HTTP_409_CONFLICT, "Duplicate value entered")


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    for error in errors:
        loc = error.get("loc", ())
        if loc and loc[0] == "path":
            # Malformed ids can never match a stored row
            return error_response(
                status.HTTP_404_NOT_FOUND,
                f"No item found with id: {error.get('input')}",
            )

    messages = []
    for error in errors:
        field = ".".join(str(part) for part in error.get("loc", ())[1:])
        messages.append(f"{field}: {error.get('msg')}" if field else error.get("msg"))
    return error_response(status.HTTP_400_BAD_REQUEST, ", ".join(messages) or "Invalid request")


async def expired_signature_handler(request: Request, exc: ExpiredSignatureError) -> JSONResponse:
    return error_response(
        status.HTTP_401_UNAUTHORIZED,
        "Your token has expired. Please log in again.",
        ExpiredTokenError.code,
    )


async def jwt_error_handler(request: Request, exc: JWTError) -> JSONResponse:
    return error_response(
        status.HTTP_401_UNAUTHORIZED,
        "Invalid token. Please log in again.",
        InvalidTokenError.code,
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit hit on {request.url.path}: {exc.detail}")
    return error_response(status.HTTP_429_TOO_MANY_REQUESTS, TooManyRequestsError.default_message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    # ExpiredSignatureError subclasses JWTError; the more specific handler wins
    app.add_exception_handler(ExpiredSignatureError, expired_signature_handler)
    app.add_exception_handler(JWTError, jwt_error_handler)
    # RateLimitExceeded is an HTTPException; the more specific handler wins
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
