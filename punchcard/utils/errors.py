"""
Standardized error response utilities for the loyalty API.

Provides consistent error response format across all endpoints:
{
    "error": {
        "message": "User-friendly error message",
        "code": "ERROR_CODE"
    }
}

Usage:
    from punchcard.utils.errors import error_response, ErrorCode

    return error_response("Reward not found", ErrorCode.NOT_FOUND, 404)
"""
import logging
from enum import Enum
from flask import jsonify
from typing import Optional

from .exceptions import (
    PunchcardError,
    NotFoundError,
    ValidationError,
    StateError,
    ConflictError,
    ExternalServiceError,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Authentication (401)
    AUTH_REQUIRED = "AUTH_REQUIRED"

    # Validation Errors (400)
    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELD = "MISSING_FIELD"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Not Found (404)
    NOT_FOUND = "NOT_FOUND"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"

    # Forbidden (403)
    TENANT_INACTIVE = "TENANT_INACTIVE"

    # Conflict (409)
    ALREADY_EXISTS = "ALREADY_EXISTS"
    STATE_CONFLICT = "STATE_CONFLICT"
    VARIATION_CONFLICT = "VARIATION_CONFLICT"

    # External Service Errors (502)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

    # Server Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_response(
    message: str,
    code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    status_code: int = 500,
    log_error: bool = True,
    details: Optional[dict] = None,
    extra: Optional[dict] = None
) -> tuple:
    """
    Create a standardized error response.

    Args:
        message: User-friendly error message
        code: Error code from ErrorCode enum (or a raw string code)
        status_code: HTTP status code
        log_error: Whether to log the error
        details: Optional additional details (only logged, not returned to user)
        extra: Optional fields merged into the returned error object

    Returns:
        Tuple of (response, status_code) for Flask
    """
    if log_error and status_code >= 500:
        logger.error(f"API Error [{code}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API Error [{code}]: {message}", extra={"details": details})

    response = {
        "error": {
            "message": message,
            "code": code.value if isinstance(code, ErrorCode) else code
        }
    }
    if extra:
        response["error"].update(extra)

    return jsonify(response), status_code


def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> tuple:
    """400 Bad Request error."""
    return error_response(message, code, 400, log_error=False)


def unauthorized(message: str = "Authentication required", code: ErrorCode = ErrorCode.AUTH_REQUIRED) -> tuple:
    """401 Unauthorized error."""
    return error_response(message, code, 401, log_error=False)


def not_found(message: str, code: ErrorCode = ErrorCode.NOT_FOUND) -> tuple:
    """404 Not Found error."""
    return error_response(message, code, 404, log_error=False)


def conflict(message: str, code: ErrorCode = ErrorCode.STATE_CONFLICT) -> tuple:
    """409 Conflict error."""
    return error_response(message, code, 409, log_error=False)


def internal_error(message: str = "An unexpected error occurred", details: Optional[dict] = None) -> tuple:
    """500 Internal Server Error."""
    return error_response(message, ErrorCode.INTERNAL_ERROR, 500, log_error=True, details=details)


def handle_loyalty_error(error: PunchcardError) -> tuple:
    """
    Map a loyalty exception onto the standard error envelope.

    NotFoundError -> 404, ValidationError -> 400, StateError and
    ConflictError -> 409, ExternalServiceError -> 502, anything else -> 500.
    """
    if isinstance(error, NotFoundError):
        return error_response(error.message, error.code, 404, log_error=False)
    if isinstance(error, ValidationError):
        return error_response(error.message, error.code, 400, log_error=False)
    if isinstance(error, ConflictError):
        extra = {'conflicts': error.conflicts} if error.conflicts else None
        return error_response(error.message, error.code, 409, log_error=False, extra=extra)
    if isinstance(error, StateError):
        return error_response(error.message, error.code, 409, log_error=False)
    if isinstance(error, ExternalServiceError):
        return error_response(error.message, error.code, 502)
    return error_response(error.message, error.code, 500)
