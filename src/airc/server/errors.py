# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Standardized REST error responses for the airc API.

All endpoints use these helpers for a flat, client-compatible error format:
{
    "success": false,
    "error": "error_code",
    "message": "Human readable message",
    ...additional fields
}

Authentication rejections use their RejectionReason value as the code
(``replay_attack``, ``timestamp_expired``...). Other codes are listed below.
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
import uuid
from typing import Any

from starlette.responses import JSONResponse

from ..core.exceptions import StoreUnavailableError
from ..identity.ratelimit import RateLimitDecision
from ..identity.rejections import Rejection, RejectionReason

logger = logging.getLogger(__name__)

# Debug mode: include exception details in 500 responses.
# Set AIRC_DEBUG=1 to enable.
_DEBUG = os.environ.get("AIRC_DEBUG", "0") == "1"

# =============================================================================
# STANDARD ERROR CODES (non-authentication)
# =============================================================================

INVALID_JSON = "invalid_json"
INVALID_HANDLE = "invalid_handle"
NOT_FOUND = "not_found"
HANDLE_TAKEN = "handle_taken"
INTERNAL_ERROR = "internal_error"
STORE_UNAVAILABLE = "store_unavailable"


# =============================================================================
# ERROR RESPONSE HELPERS
# =============================================================================


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    headers: dict[str, str] | None = None,
    **fields: Any,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Machine-readable error code
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        headers: Extra response headers
        **fields: Additional top-level body fields

    Returns:
        JSONResponse with standardized error format
    """
    body: dict[str, Any] = {"success": False, "error": code, "message": message}
    body.update(fields)
    return JSONResponse(body, status_code=status_code, headers=headers)


def rejection_response(
    rejection: Rejection,
    headers: dict[str, str] | None = None,
    rate_limit: RateLimitDecision | None = None,
) -> JSONResponse:
    """Render an authentication rejection with its mapped HTTP status."""
    merged = dict(headers or {})
    if rate_limit is not None and rejection.reason == RejectionReason.RATE_LIMITED:
        merged.update(rate_limit.headers())
    return JSONResponse(rejection.to_dict(), status_code=rejection.http_status, headers=merged or None)


def missing_field_error(field_name: str) -> JSONResponse:
    """Create a 400 error for a missing required field."""
    return rejection_response(
        Rejection.of(RejectionReason.MISSING_FIELD, f"Missing required field: {field_name}", field=field_name)
    )


def invalid_json_error() -> JSONResponse:
    """Create a 400 error for invalid JSON body."""
    return error_response(INVALID_JSON, "Invalid JSON body", status_code=400)


def validation_error(message: str, code: str = INVALID_HANDLE, **fields: Any) -> JSONResponse:
    """Create a 400 validation error response."""
    return error_response(code, message, status_code=400, **fields)


def not_found_error(resource: str) -> JSONResponse:
    """Create a 404 not found error response."""
    return error_response(NOT_FOUND, f"{resource} not found", status_code=404)


def conflict_error(message: str, code: str = HANDLE_TAKEN) -> JSONResponse:
    """Create a 409 conflict error response."""
    return error_response(code, message, status_code=409)


def store_unavailable_error(exc: StoreUnavailableError) -> JSONResponse:
    """Create a 503 response for an unreachable store.

    This is the only retryable failure class.
    """
    logger.error(f"Store unavailable: {exc.message}")
    return error_response(
        STORE_UNAVAILABLE,
        "Authentication store temporarily unavailable",
        status_code=503,
        headers={"Retry-After": "1"},
        retryable=True,
    )


def internal_error(
    message: str = "Internal server error",
    exc: BaseException | None = None,
) -> JSONResponse:
    """Create a 500 internal error response.

    Always includes a request_id for log correlation. In debug mode
    (AIRC_DEBUG=1) also includes the exception type and message.
    """
    request_id = uuid.uuid4().hex[:12]
    fields: dict[str, Any] = {"request_id": request_id}

    if exc is None:
        exc = sys.exc_info()[1]

    if exc is not None:
        logger.error("request_id=%s %s: %s", request_id, type(exc).__name__, exc)
        if _DEBUG:
            fields["exception"] = type(exc).__name__
            fields["detail"] = str(exc)
            fields["traceback"] = traceback.format_exception_only(type(exc), exc)[0].strip()

    return error_response(INTERNAL_ERROR, message, status_code=500, **fields)
