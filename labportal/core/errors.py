"""Code-tagged domain errors shared by the agenda and live-chat services.

Every failure a caller can observe carries a stable machine-readable
``code``, a human-readable ``message`` suitable for direct display and the
HTTP status used when it crosses the REST boundary. The WebSocket gateway
emits the same ``code``/``message`` pair in its ``error`` event.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

__all__ = [
    "AlreadyAssigned",
    "AppointmentNotCancellable",
    "AppointmentNotFound",
    "ConversationClosed",
    "ConversationNotFound",
    "DuplicateBooking",
    "InternalError",
    "InvalidDate",
    "InvalidRequest",
    "InvalidTime",
    "LabPortalError",
    "NotAuthenticated",
    "NotAuthorized",
    "PastDate",
    "PatientNotFound",
    "RateLimited",
    "SlotNoLongerAvailable",
    "register_exception_handlers",
]

logger = logging.getLogger(__name__)


class LabPortalError(Exception):
    """Base class carrying the code/message/status triple."""

    code = "InternalError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred. Please try again later."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, object]:
        return {"success": False, "error_code": self.code, "message": self.message}


class PatientNotFound(LabPortalError):
    code = "PatientNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = (
        "No registered patient matches that identification. Please register "
        "on the portal or visit one of our locations."
    )


class InvalidDate(LabPortalError):
    code = "InvalidDate"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "The date is not valid. Use the YYYY-MM-DD format."


class InvalidTime(LabPortalError):
    code = "InvalidTime"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "The time is not valid. Use the 24-hour HH:MM format."


class PastDate(LabPortalError):
    code = "PastDate"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Appointments cannot be booked for past dates."


class DuplicateBooking(LabPortalError):
    code = "DuplicateBooking"
    status_code = status.HTTP_409_CONFLICT
    default_message = "You already have an appointment booked for this time slot."


class SlotNoLongerAvailable(LabPortalError):
    code = "SlotNoLongerAvailable"
    status_code = status.HTTP_409_CONFLICT
    default_message = (
        "That time slot was just taken. Please check availability again and "
        "choose another time."
    )


class AppointmentNotFound(LabPortalError):
    code = "AppointmentNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Appointment not found. Please check the appointment number."


class AppointmentNotCancellable(LabPortalError):
    code = "AppointmentNotCancellable"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This appointment can no longer be cancelled."


class ConversationNotFound(LabPortalError):
    code = "ConversationNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Conversation not found."


class ConversationClosed(LabPortalError):
    code = "ConversationClosed"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This conversation has already been closed."


class AlreadyAssigned(LabPortalError):
    code = "AlreadyAssigned"
    status_code = status.HTTP_409_CONFLICT
    default_message = (
        "Another operator already took this conversation. Refresh the pending list."
    )


class NotAuthorized(LabPortalError):
    code = "NotAuthorized"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You are not registered as an operator."


class NotAuthenticated(LabPortalError):
    code = "NotAuthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "A valid access token is required."


class InvalidRequest(LabPortalError):
    code = "InvalidRequest"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "The request is missing required fields or has invalid values."


class RateLimited(LabPortalError):
    code = "RateLimited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please wait a moment and try again."


class InternalError(LabPortalError):
    pass


def _validation_message(exc: RequestValidationError) -> str:
    problems = []
    for error in exc.errors()[:5]:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    if not problems:
        return InvalidRequest.default_message
    return "Invalid request. " + "; ".join(problems)


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain, validation and rate-limit failures as the JSON failure envelope."""

    @app.exception_handler(LabPortalError)
    async def labportal_error_handler(request: Request, exc: LabPortalError):
        if isinstance(exc, InternalError):
            logger.error("[InternalError] %s | Path=%s", exc.message, request.url.path)
        else:
            logger.info("[%s] %s | Path=%s", exc.code, exc.message, request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = InvalidRequest(_validation_message(exc))
        logger.info("[%s] %s | Path=%s", error.code, error.message, request.url.path)
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        error = RateLimited(f"Too many requests ({exc.detail}). Please try again later.")
        logger.info("[%s] %s | Path=%s", error.code, error.message, request.url.path)
        response = JSONResponse(status_code=error.status_code, content=error.to_payload())
        limiter = getattr(request.app.state, "limiter", None)
        view_rate_limit = getattr(request.state, "view_rate_limit", None)
        if limiter is not None and view_rate_limit is not None:
            response = limiter._inject_headers(response, view_rate_limit)
        return response
