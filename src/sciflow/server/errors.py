# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Standardized REST error responses for the SciFlow API.

Every error uses one envelope:
{
    "success": false,
    "error": {
        "code": "ERROR_CODE",
        "message": "Human readable message"
    }
}

Domain exceptions carry their own stable ``code``; ``error_from_exception``
maps each kind to its HTTP status.
"""

from __future__ import annotations

import logging
import sys
import traceback
import uuid
from typing import Any

from starlette.responses import JSONResponse

from ..core.exceptions import (
    AuthorizationError,
    InsufficientStakeError,
    NotFoundError,
    RailUnavailable,
    RailVerificationError,
    SciflowError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# STANDARD ERROR CODES
# =============================================================================

# Validation errors (400)
VALIDATION_MISSING_FIELD = "VALIDATION_MISSING_FIELD"
VALIDATION_INVALID_JSON = "VALIDATION_INVALID_JSON"

# Authentication errors (401)
AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"

# Rate limiting (429)
RATE_LIMITED = "RATE_LIMITED"

# Server errors (500)
INTERNAL_ERROR = "INTERNAL_ERROR"

# Exception kind -> HTTP status; first match wins, so subclasses come first
_STATUS_BY_KIND: tuple[tuple[type[SciflowError], int], ...] = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (StateConflictError, 409),
    (InsufficientStakeError, 409),
    (RailUnavailable, 503),
    (RailVerificationError, 502),
)


# =============================================================================
# ERROR RESPONSE HELPERS
# =============================================================================


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


def status_for(exc: SciflowError) -> int:
    for kind, status in _STATUS_BY_KIND:
        if isinstance(exc, kind):
            return status
    return 500


def error_from_exception(exc: SciflowError, debug: bool = False) -> JSONResponse:
    """Render a domain exception with the status its kind maps to."""
    status = status_for(exc)
    if status == 500:
        return internal_error(exc.message, exc, debug=debug)
    if status >= 500:
        logger.warning(f"{exc.code}: {exc.message}")
    return error_response(exc.code, exc.message, status, exc.details)


def missing_field_error(field_name: str) -> JSONResponse:
    return error_response(VALIDATION_MISSING_FIELD, f"{field_name} is required", status_code=400)


def invalid_json_error() -> JSONResponse:
    return error_response(VALIDATION_INVALID_JSON, "Invalid JSON body", status_code=400)


def auth_error(message: str = "Authentication failed", code: str = AUTH_INVALID_TOKEN) -> JSONResponse:
    """Create a 401 authentication error response."""
    return JSONResponse(
        {"success": False, "error": {"code": code, "message": message}},
        status_code=401,
        headers={"WWW-Authenticate": 'Bearer realm="sciflow"'},
    )


def rate_limited_error() -> JSONResponse:
    return error_response(RATE_LIMITED, "Too many requests", status_code=429)


def internal_error(
    message: str = "Internal server error",
    exc: BaseException | None = None,
    debug: bool = False,
) -> JSONResponse:
    """Create a 500 internal error response.

    Always includes a request_id for log correlation. With ``debug`` the
    exception type and message are included as well.
    """
    request_id = uuid.uuid4().hex[:12]

    error_body: dict = {
        "code": INTERNAL_ERROR,
        "message": message,
        "request_id": request_id,
    }

    if exc is None:
        exc = sys.exc_info()[1]

    if exc is not None:
        logger.error("request_id=%s %s: %s", request_id, type(exc).__name__, exc)
        if debug:
            error_body["exception"] = type(exc).__name__
            error_body["detail"] = str(exc)
            error_body["traceback"] = traceback.format_exception_only(type(exc), exc)[0].strip()

    return JSONResponse({"success": False, "error": error_body}, status_code=500)
