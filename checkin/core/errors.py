"""
Standardized error responses for the QR check-in API.

This module provides consistent error response formatting across all endpoints,
making it easier for clients to handle errors and for debugging.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from checkin.services.errors import CheckinError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Authentication errors (1xxx)
    INVALID_CREDENTIALS = "AUTH_1001"
    TOKEN_INVALID = "AUTH_1003"

    # Authorization errors (2xxx)
    PERMISSION_DENIED = "AUTHZ_2001"
    INSUFFICIENT_ROLE = "AUTHZ_2002"

    # Validation errors (3xxx)
    VALIDATION_ERROR = "VAL_3001"
    INVALID_INPUT = "VAL_3002"

    # Resource errors (4xxx)
    RESOURCE_NOT_FOUND = "RES_4001"
    RESOURCE_CONFLICT = "RES_4005"

    # Token lifecycle errors, same strings as CheckinError.error_code
    QR_FORMAT_INVALID = "QR_FORMAT_INVALID"
    QR_EXPIRED = "QR_EXPIRED"
    QR_SIGNATURE_INVALID = "QR_SIGNATURE_INVALID"
    QR_SESSION_MISMATCH = "QR_SESSION_MISMATCH"
    QR_NOT_FOUND = "QR_NOT_FOUND"
    QR_ALREADY_USED = "QR_ALREADY_USED"
    PARTICIPANT_NOT_FOUND = "PARTICIPANT_NOT_FOUND"
    SESSION_KIND_INVALID = "SESSION_KIND_INVALID"
    STORAGE_TIMEOUT = "STORAGE_TIMEOUT"

    # System errors (6xxx)
    INTERNAL_ERROR = "SYS_6001"
    RATE_LIMIT_EXCEEDED = "SYS_6004"
    SERVICE_UNAVAILABLE = "SYS_6005"


# HTTP status for each token lifecycle error
CHECKIN_ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.QR_FORMAT_INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorCode.QR_SIGNATURE_INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorCode.QR_SESSION_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorCode.SESSION_KIND_INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorCode.QR_EXPIRED: status.HTTP_410_GONE,
    ErrorCode.QR_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.PARTICIPANT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.QR_ALREADY_USED: status.HTTP_409_CONFLICT,
    ErrorCode.STORAGE_TIMEOUT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ErrorDetail(BaseModel):
    """Detailed error information."""

    field: str | None = None
    message: str
    code: str | None = None


class APIException(HTTPException):
    """Extended HTTPException with standardized error codes."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: list[ErrorDetail] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message, headers=headers)


class UnauthorizedError(APIException):
    """Authentication required error."""

    def __init__(self, message: str = "Authentication required", code: ErrorCode = ErrorCode.INVALID_CREDENTIALS):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(APIException):
    """Permission denied error."""

    def __init__(self, message: str = "Permission denied", code: ErrorCode = ErrorCode.PERMISSION_DENIED):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
        )


def checkin_error_to_api(exc: CheckinError) -> APIException:
    """Map a domain error onto the HTTP envelope."""
    try:
        code = ErrorCode(exc.error_code)
    except ValueError:
        code = ErrorCode.INTERNAL_ERROR
    status_code = CHECKIN_ERROR_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    details = [ErrorDetail(message=exc.reason, code=exc.error_code)] if exc.reason else None
    return APIException(status_code=status_code, code=code, message=exc.message, details=details)


def create_error_response(
    code: ErrorCode,
    message: str,
    details: list[ErrorDetail] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create a standardized error response dictionary."""
    response = {
        "error": code.name.lower().replace("_", " ").title(),
        "code": code.value,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if details:
        response["details"] = [d.model_dump(exclude_none=True) for d in details]

    if request_id:
        response["request_id"] = request_id

    return response


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle APIException and return standardized response."""
    request_id = getattr(request.state, "request_id", None)

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=exc.code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
        headers=exc.headers,
    )


async def checkin_exception_handler(request: Request, exc: CheckinError) -> JSONResponse:
    """Handle domain errors raised by the token lifecycle services."""
    return await api_exception_handler(request, checkin_error_to_api(exc))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request validation failures with one detail per offending field."""
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in error.get("loc", ()) if part != "body") or None,
            message=error.get("msg", "Invalid value"),
            code=error.get("type"),
        )
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=422,
        content=create_error_response(
            code=ErrorCode.INVALID_INPUT,
            message="Request validation failed",
            details=details,
            request_id=getattr(request.state, "request_id", None),
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle standard HTTPException and convert to standardized response."""
    request_id = getattr(request.state, "request_id", None)

    # Map status codes to error codes
    status_to_code = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.INVALID_CREDENTIALS,
        403: ErrorCode.PERMISSION_DENIED,
        404: ErrorCode.RESOURCE_NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.INVALID_INPUT,
        429: ErrorCode.RATE_LIMIT_EXCEEDED,
        500: ErrorCode.INTERNAL_ERROR,
        503: ErrorCode.SERVICE_UNAVAILABLE,
    }

    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else "An error occurred"

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=code,
            message=message,
            request_id=request_id,
        ),
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception("Unhandled exception: %s", exc)

    request_id = getattr(request.state, "request_id", None)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message="An unexpected error occurred",
            request_id=request_id,
        ),
    )
