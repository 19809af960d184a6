# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Client-side construction of signed envelopes and proofs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from .canonical import SIGNATURE_FIELD, canonicalize_message
from .keys import KeyPair, PublicKey
from .nonces import generate_nonce
from .rotation import REVOKE_OPERATION, ROTATE_OPERATION
from .signatures import sign_bytes, sign_envelope


def _timestamp(now: datetime | None) -> str:
    return (now or datetime.now(UTC)).astimezone(UTC).isoformat().replace("+00:00", "Z")


def create_message_envelope(
    sender: str,
    recipient: str,
    text: str,
    signing_key: KeyPair,
    now: datetime | None = None,
    nonce: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build and sign a message envelope with the sender's signing key.

    ``extra`` fields travel with the envelope but are not signed.
    """
    signed: dict[str, Any] = {
        "from": sender,
        "to": recipient,
        "text": text,
        "timestamp": _timestamp(now),
        "nonce": nonce or generate_nonce(),
    }
    envelope = {**extra, **signed}
    envelope[SIGNATURE_FIELD] = sign_bytes(canonicalize_message(signed), signing_key)
    return envelope


def create_rotation_proof(
    handle: str,
    old_key: str | PublicKey,
    new_key: str | PublicKey,
    recovery_key: KeyPair,
    now: datetime | None = None,
    nonce: str | None = None,
) -> dict[str, Any]:
    """Build a rotation proof signed by the identity's recovery key.

    Args:
        handle: Identity whose signing key is being replaced.
        old_key: Current signing public key.
        new_key: Proposed signing public key.
        recovery_key: Recovery key pair; only it can authorise the swap.
    """
    proof = {
        "operation": ROTATE_OPERATION,
        "handle": handle,
        "old_key": str(old_key),
        "new_key": str(new_key),
        "timestamp": _timestamp(now),
        "nonce": nonce or generate_nonce(),
    }
    return sign_envelope(proof, recovery_key)


def create_revocation_proof(
    handle: str,
    recovery_key: KeyPair,
    reason: str | None = None,
    now: datetime | None = None,
    nonce: str | None = None,
) -> dict[str, Any]:
    """Build a revocation proof signed by the identity's recovery key."""
    proof: dict[str, Any] = {
        "operation": REVOKE_OPERATION,
        "handle": handle,
        "timestamp": _timestamp(now),
        "nonce": nonce or generate_nonce(),
    }
    if reason:
        proof["reason"] = reason
    return sign_envelope(proof, recovery_key)
