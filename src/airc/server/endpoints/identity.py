# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""REST endpoints for identity registration, key rotation and revocation.

Routes:
    POST   /api/v1/identity                    - register a handle
    GET    /api/v1/identity/{handle}           - public view of an identity
    POST   /identity/{handle}/rotate           - rotate the signing key (recovery-key proof)
    POST   /identity/{handle}/revoke           - revoke the identity (recovery-key proof)

The rotate/revoke routes are also mounted under /api/v1.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from ...core.exceptions import ConflictError, StoreUnavailableError, ValidationException
from ...identity.keys import PublicKey
from ...identity.models import Identity, Operation, normalize_handle
from ...identity.rejections import Rejection, RejectionReason
from ...identity.rotation import RecoveryAuthorizedMachine, RotationOutcome
from ..errors import (
    conflict_error,
    internal_error,
    invalid_json_error,
    missing_field_error,
    not_found_error,
    rejection_response,
    store_unavailable_error,
    validation_error,
)
from ..metrics import get_metrics_collector
from ..services import get_services

logger = logging.getLogger(__name__)


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _register(body: dict[str, Any], client: str, now: datetime) -> JSONResponse:
    services = get_services()
    scope = f"addr:{client}"

    decision = services.rate_limiter.check(scope, Operation.REGISTRATION, now)
    if not decision.allowed:
        rejection = Rejection.of(
            RejectionReason.RATE_LIMITED,
            f"Too many registrations. Try again in {decision.retry_after_seconds}s",
            retry_after=decision.retry_after_seconds,
        )
        return rejection_response(rejection, rate_limit=decision)

    try:
        handle = normalize_handle(body["handle"])
    except ValidationException as e:
        return validation_error(e.message, handle=body["handle"])

    keys: dict[str, str | None] = {"signing_key": None, "recovery_key": None}
    for name in keys:
        value = body.get(name)
        if value in (None, "") and name == "recovery_key":
            continue
        try:
            keys[name] = str(PublicKey.parse(value))
        except ValidationException as e:
            return rejection_response(Rejection.of(RejectionReason.INVALID_KEY, e.message, field=name))

    identity = Identity(handle=handle, signing_key=keys["signing_key"], recovery_key=keys["recovery_key"])
    try:
        services.store.register_identity(identity)
    except ConflictError:
        return conflict_error(f"Handle @{handle} is already registered")

    services.rate_limiter.hit(scope, Operation.REGISTRATION, now)
    logger.info(f"Registered identity @{handle} (recovery key: {identity.recovery_key is not None})")

    result: dict[str, Any] = {"success": True, "handle": handle, "signing_key": identity.signing_key}
    if identity.recovery_key:
        result["recovery_key"] = identity.recovery_key
    else:
        result["warning"] = "No recovery key registered. This identity can never rotate its signing key."
    return JSONResponse(result, status_code=201)


async def register_identity_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/identity - Register a handle with its public keys.

    Request Body (JSON):
        {
            "handle": "alice",
            "signing_key": "ed25519:<base64>",
            "recovery_key": "ed25519:<base64>"   // optional, required to ever rotate
        }

    Returns:
        201: Registered identity
        400: Invalid handle or key
        409: Handle already registered
        429: Too many registrations from this address
    """
    try:
        body = await request.json()
    except Exception:
        return invalid_json_error()
    if not isinstance(body, dict):
        return invalid_json_error()

    for name in ("handle", "signing_key"):
        if not body.get(name):
            return missing_field_error(name)

    try:
        return await asyncio.to_thread(_register, body, _client_address(request), datetime.now(UTC))
    except StoreUnavailableError as e:
        return store_unavailable_error(e)
    except Exception:
        logger.exception("Error registering identity")
        return internal_error()


async def get_identity_endpoint(request: Request) -> JSONResponse:
    """GET /api/v1/identity/{handle} - Public view of an identity."""
    try:
        handle = normalize_handle(request.path_params["handle"])
    except ValidationException:
        return not_found_error("Identity")

    try:
        identity = await asyncio.to_thread(get_services().store.get_identity, handle)
    except StoreUnavailableError as e:
        return store_unavailable_error(e)
    except Exception:
        logger.exception("Error loading identity")
        return internal_error()

    if identity is None:
        return not_found_error("Identity")
    return JSONResponse({"success": True, "identity": identity.public_view()})


# ---------------------------------------------------------------------------
# Recovery-key authorised operations
# ---------------------------------------------------------------------------


def _outcome_response(outcome: RotationOutcome) -> JSONResponse:
    get_metrics_collector().record_auth_decision(
        outcome.operation,
        "accepted" if outcome.applied else outcome.reason.value,
    )
    if outcome.rejection is not None:
        return rejection_response(outcome.rejection, rate_limit=outcome.rate_limit)
    headers = None
    if outcome.rate_limit is not None:
        # The applied operation itself exhausted the window; only a 429 carries Retry-After
        headers = {k: v for k, v in outcome.rate_limit.headers().items() if k != "Retry-After"}
    return JSONResponse(outcome.to_dict(), headers=headers)


async def _run_machine(request: Request, machine: RecoveryAuthorizedMachine, label: str) -> JSONResponse:
    try:
        body = await request.json()
    except Exception:
        return invalid_json_error()
    if not isinstance(body, dict) or "proof" not in body:
        return missing_field_error("proof")

    try:
        outcome = await asyncio.to_thread(
            machine.process,
            request.path_params["handle"],
            body["proof"],
            datetime.now(UTC),
            _client_address(request),
        )
    except StoreUnavailableError as e:
        return store_unavailable_error(e)
    except Exception:
        logger.exception(f"Error processing {label}")
        return internal_error()

    return _outcome_response(outcome)


async def rotate_key_endpoint(request: Request) -> JSONResponse:
    """POST /identity/{handle}/rotate - Rotate the signing key.

    Request Body (JSON):
        {
            "proof": {
                "operation": "rotate",
                "handle": "alice",
                "old_key": "ed25519:<current signing key>",
                "new_key": "ed25519:<new signing key>",
                "timestamp": "2026-01-15T12:00:00Z",
                "nonce": "<hex, 16+ bytes>",
                "signature": "<base64, by the RECOVERY key>"
            }
        }

    Returns:
        200: Rotation applied
        400: Malformed proof, or no_recovery_key
        401: invalid_proof / replay_attack / timestamp_expired
        403: identity_revoked / identity_suspended
        429: rate_limited (with Retry-After)
        503: store_unavailable (retryable)
    """
    return await _run_machine(request, get_services().rotation, "key rotation")


async def revoke_identity_endpoint(request: Request) -> JSONResponse:
    """POST /identity/{handle}/revoke - Revoke the identity.

    Request Body (JSON):
        {
            "proof": {
                "operation": "revoke",
                "handle": "alice",
                "reason": "key compromise",   // optional
                "timestamp": "...",
                "nonce": "...",
                "signature": "<base64, by the RECOVERY key>"
            }
        }
    """
    return await _run_machine(request, get_services().revocation, "revocation")
