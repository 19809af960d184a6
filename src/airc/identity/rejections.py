# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Closed set of authentication rejection reasons.

Every authentication path returns one of these reasons rather than a
free-form string, so callers can handle them exhaustively. Each reason
belongs to exactly one error category and maps to one HTTP status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Taxonomy of authentication failures.

    Only INFRASTRUCTURE is retryable; it is raised as
    StoreUnavailableError rather than returned as a Rejection.
    """

    MALFORMED = "malformed"
    STALE = "stale"
    REPLAY = "replay"
    FORGED = "forged"
    POLICY = "policy"
    INFRASTRUCTURE = "infrastructure"


class RejectionReason(str, Enum):
    """Machine-readable rejection codes shared by the core and its callers."""

    # Malformed input (rejected before any cryptographic work)
    MISSING_FIELD = "missing_field"
    INVALID_TIMESTAMP = "invalid_timestamp"
    INVALID_NONCE = "invalid_nonce"
    INVALID_KEY = "invalid_key"
    INVALID_OPERATION = "invalid_operation"
    HANDLE_MISMATCH = "handle_mismatch"

    # Stale
    TIMESTAMP_EXPIRED = "timestamp_expired"

    # Replay
    REPLAY_ATTACK = "replay_attack"

    # Forged
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_PROOF = "invalid_proof"

    # Policy
    SIGNATURE_REQUIRED = "signature_required"
    NO_RECOVERY_KEY = "no_recovery_key"
    RATE_LIMITED = "rate_limited"
    IDENTITY_REVOKED = "identity_revoked"
    IDENTITY_SUSPENDED = "identity_suspended"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_CATEGORIES: dict[RejectionReason, ErrorCategory] = {
    RejectionReason.MISSING_FIELD: ErrorCategory.MALFORMED,
    RejectionReason.INVALID_TIMESTAMP: ErrorCategory.MALFORMED,
    RejectionReason.INVALID_NONCE: ErrorCategory.MALFORMED,
    RejectionReason.INVALID_KEY: ErrorCategory.MALFORMED,
    RejectionReason.INVALID_OPERATION: ErrorCategory.MALFORMED,
    RejectionReason.HANDLE_MISMATCH: ErrorCategory.MALFORMED,
    RejectionReason.TIMESTAMP_EXPIRED: ErrorCategory.STALE,
    RejectionReason.REPLAY_ATTACK: ErrorCategory.REPLAY,
    RejectionReason.INVALID_SIGNATURE: ErrorCategory.FORGED,
    RejectionReason.INVALID_PROOF: ErrorCategory.FORGED,
    RejectionReason.SIGNATURE_REQUIRED: ErrorCategory.POLICY,
    RejectionReason.NO_RECOVERY_KEY: ErrorCategory.POLICY,
    RejectionReason.RATE_LIMITED: ErrorCategory.POLICY,
    RejectionReason.IDENTITY_REVOKED: ErrorCategory.POLICY,
    RejectionReason.IDENTITY_SUSPENDED: ErrorCategory.POLICY,
}

_HTTP_STATUS: dict[RejectionReason, int] = {
    RejectionReason.MISSING_FIELD: 400,
    RejectionReason.INVALID_TIMESTAMP: 400,
    RejectionReason.INVALID_NONCE: 400,
    RejectionReason.INVALID_KEY: 400,
    RejectionReason.INVALID_OPERATION: 400,
    RejectionReason.HANDLE_MISMATCH: 400,
    RejectionReason.TIMESTAMP_EXPIRED: 401,
    RejectionReason.REPLAY_ATTACK: 401,
    RejectionReason.INVALID_SIGNATURE: 401,
    RejectionReason.INVALID_PROOF: 401,
    RejectionReason.SIGNATURE_REQUIRED: 401,
    RejectionReason.NO_RECOVERY_KEY: 400,
    RejectionReason.RATE_LIMITED: 429,
    RejectionReason.IDENTITY_REVOKED: 403,
    RejectionReason.IDENTITY_SUSPENDED: 403,
}

_DEFAULT_MESSAGES: dict[RejectionReason, str] = {
    RejectionReason.MISSING_FIELD: "A required field is missing",
    RejectionReason.INVALID_TIMESTAMP: "Could not parse timestamp",
    RejectionReason.INVALID_NONCE: "Nonce must carry at least 16 bytes of hex or base64 entropy",
    RejectionReason.INVALID_KEY: "Key must be formatted as <algorithm>:<base64 key>",
    RejectionReason.INVALID_OPERATION: "Unexpected operation tag",
    RejectionReason.HANDLE_MISMATCH: "Proof handle does not match the requested identity",
    RejectionReason.TIMESTAMP_EXPIRED: "Timestamp is outside the accepted window",
    RejectionReason.REPLAY_ATTACK: "Nonce has already been used",
    RejectionReason.INVALID_SIGNATURE: "Message signature verification failed",
    RejectionReason.INVALID_PROOF: "Proof signature verification failed",
    RejectionReason.SIGNATURE_REQUIRED: "Message signature is required",
    RejectionReason.NO_RECOVERY_KEY: "No recovery key registered for this identity",
    RejectionReason.RATE_LIMITED: "Rate limit exceeded",
    RejectionReason.IDENTITY_REVOKED: "Identity has been revoked",
    RejectionReason.IDENTITY_SUSPENDED: "Identity is suspended",
}


@dataclass(frozen=True)
class Rejection:
    """A typed authentication rejection."""

    reason: RejectionReason
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, reason: RejectionReason, message: str | None = None, **details: Any) -> Rejection:
        return cls(reason=reason, message=message or _DEFAULT_MESSAGES[reason], details=details)

    @property
    def category(self) -> ErrorCategory:
        return self.reason.category

    @property
    def http_status(self) -> int:
        return self.reason.http_status

    def to_dict(self) -> dict[str, Any]:
        """Wire shape: ``{"success": false, "error": <code>, "message": ..., **details}``."""
        body: dict[str, Any] = {
            "success": False,
            "error": self.reason.value,
            "message": self.message,
        }
        body.update(self.details)
        return body
