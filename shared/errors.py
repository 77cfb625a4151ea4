"""
Error taxonomy for the facility reservation engine.

Engine functions raise these exceptions; every service installs
:func:`install_error_handlers` so they reach the caller as structured
JSON with the matching HTTP status code.
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)


class FacilityError(Exception):
    """
    Base class of all business failures.

    Attributes:
        message (str): Human readable message
        field (str): Request field the failure relates to, if any
        details (dict): Extra structured context
    """
    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.field:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return body


class BadRequestError(FacilityError):
    """Malformed input, invalid interval, duration over cap, unavailable room."""
    code = "BAD_REQUEST"
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(FacilityError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(FacilityError):
    """Banned applicant or missing permission."""
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(FacilityError):
    """Unknown id, or an id the caller has no visibility into."""
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(FacilityError):
    """Overlapping reservation, re-ban, illegal transition, delete with dependents."""
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


async def facility_error_handler(request: Request, exc: FacilityError) -> JSONResponse:
    """Render a FacilityError as JSON."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Render request validation failures as BAD_REQUEST.

    The first failing location becomes ``field``; the full pydantic
    error list goes to ``details``.
    """
    errors = exc.errors()
    field = None
    message = "Invalid request"
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or None
        message = errors[0].get("msg", message)
    error = BadRequestError(message, field=field,
                            details={"errors": jsonable_encoder(errors, exclude={"ctx", "input", "url"})})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def install_error_handlers(app: FastAPI):
    """
    Register the FacilityError and validation handlers on an application.

    Args:
        app: FastAPI application instance

    Example:
        app = FastAPI()
        install_error_handlers(app)
    """
    app.add_exception_handler(FacilityError, facility_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
