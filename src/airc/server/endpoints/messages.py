# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""REST endpoint for authenticated messages.

Routes:
    POST   /api/v1/messages   - authenticate and accept a message envelope
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from ...core.exceptions import StoreUnavailableError
from ...identity.models import Operation
from ..errors import (
    internal_error,
    invalid_json_error,
    missing_field_error,
    rejection_response,
    store_unavailable_error,
)
from ..metrics import get_metrics_collector
from ..services import get_services

logger = logging.getLogger(__name__)

REQUIRED_MESSAGE_FIELDS = ("from", "to", "text")


async def post_message_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/messages - Accept a message after authenticating it.

    Request Body (JSON):
        {
            "from": "alice",
            "to": "bob",
            "text": "hello",
            "timestamp": "2026-01-15T12:00:00Z",   // required when signed
            "nonce": "<hex, 16+ bytes>",            // required when signed
            "signature": "<base64>"                 // optional during grace period
        }

    Returns:
        200: {"success": true, "message_id": ..., "signed": bool, "warning"?: ...}
        400: Malformed envelope
        401: signature_required / invalid_signature / replay_attack / timestamp_expired
        429: rate_limited
        503: store_unavailable (retryable)
    """
    try:
        body = await request.json()
    except Exception:
        return invalid_json_error()
    if not isinstance(body, dict):
        return invalid_json_error()

    for name in REQUIRED_MESSAGE_FIELDS:
        if body.get(name) in (None, ""):
            return missing_field_error(name)

    services = get_services()
    now = datetime.now(UTC)
    headers = services.authenticator.policy.headers(now)
    collector = get_metrics_collector()

    try:
        verdict = await asyncio.to_thread(services.authenticator.authenticate, body, now)
    except StoreUnavailableError as e:
        return store_unavailable_error(e)
    except Exception:
        logger.exception("Error authenticating message")
        return internal_error()

    if not verdict.accepted:
        collector.record_auth_decision(Operation.MESSAGE.value, verdict.rejection.reason.value)
        return rejection_response(verdict.rejection, headers=headers, rate_limit=verdict.rate_limit)

    collector.record_auth_decision(Operation.MESSAGE.value, "accepted")
    message_id = services.messages.deliver(body, verdict)

    result: dict[str, Any] = {"success": True, "message_id": message_id, "signed": verdict.signed}
    if verdict.warnings:
        result["warning"] = " ".join(verdict.warnings)
    if not verdict.signed and verdict.grace_period_ends is not None:
        result["grace_period_ends"] = verdict.grace_period_ends.isoformat()
    return JSONResponse(result, headers=headers)
