"""
Domain errors and the handlers that turn them into the API's error envelope.

Every failure leaves the API as ``{"success": false, "message": ..., "errors": [...]}``.
"""

import logging
from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class InvalidStatus(ValidationError):
    default_message = "Invalid status value"


class InvalidTransition(ValidationError):
    default_message = "Status change not allowed"


class ServiceMismatch(ValidationError):
    default_message = "Your services do not match the event requirements"


class SessionExpired(ValidationError):
    default_message = "OTP has expired. Please request a new one."


class InvalidCredentials(AppError):
    status_code = 400
    default_message = "Invalid credentials"


class Conflict(AppError):
    status_code = 400
    default_message = "Conflict"


class DuplicateField(Conflict):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"{field} already exists")


class AlreadyApplied(Conflict):
    default_message = "You have already applied to this event"


class NoAvailableSlots(Conflict):
    default_message = "No available slots for this event"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class EventNotFound(NotFound):
    default_message = "Event not found"


class BookingNotFound(NotFound):
    default_message = "Booking not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class SessionNotFound(NotFound):
    default_message = "Invalid OTP session"


class Unauthorized(AppError):
    status_code = 401
    default_message = "Could not validate credentials"


class Forbidden(AppError):
    status_code = 403
    default_message = "Insufficient permissions"


class ProviderError(AppError):
    status_code = 500
    default_message = "Failed to send OTP. Please try again later."


class InvalidCode(ProviderError):
    status_code = 400
    default_message = "Invalid OTP"


class ProviderTimeout(ProviderError):
    status_code = 504
    default_message = "OTP provider did not respond in time"


class InternalError(AppError):
    pass


def error_body(message: str, errors: Optional[List[Any]] = None) -> dict:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return body


def register_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.errors))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning(f"Validation error for {request.url.path}: {errors}")
        return JSONResponse(status_code=400, content=error_body("Validation failed", errors))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        key_value = (exc.details or {}).get("keyValue") or {}
        field = next(iter(key_value), "record")
        return JSONResponse(status_code=400, content=error_body(DuplicateField(field).message))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        body = error_body("Internal server error")
        if debug:
            body["detail"] = str(exc)
        return JSONResponse(status_code=500, content=body)
