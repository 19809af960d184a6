# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Data model for identities, rotation history and audit events."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..core.exceptions import ValidationException

HANDLE_PATTERN = re.compile(r"^[a-z0-9_-]{1,50}$")


class IdentityStatus(str, Enum):
    """Lifecycle status of an identity."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class Operation(str, Enum):
    """Operations tracked by the nonce ledger, rate limiter and audit log."""

    MESSAGE = "message"
    ROTATION = "rotation"
    REVOCATION = "revocation"
    REGISTRATION = "registration"


def normalize_handle(handle: str) -> str:
    """Normalize a handle to its canonical, case-insensitive form.

    Strips a leading ``@`` and surrounding whitespace and lower-cases.

    Raises:
        ValidationException: If the result is not a valid handle.
    """
    if not isinstance(handle, str):
        raise ValidationException("Handle must be a string", field="handle")
    normalized = handle.strip().lstrip("@").lower()
    if not HANDLE_PATTERN.match(normalized):
        raise ValidationException("Invalid handle", field="handle", value=handle)
    return normalized


@dataclass
class RotationEvent:
    """One successful signing-key rotation."""

    handle: str
    old_key: str
    new_key: str
    nonce: str
    rotated_at: datetime
    proof_timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "old_key": self.old_key,
            "new_key": self.new_key,
            "nonce": self.nonce,
            "rotated_at": self.rotated_at.isoformat(),
            "proof_timestamp": self.proof_timestamp,
        }


@dataclass
class Identity:
    """A registered participant.

    The signing key is mandatory; a recovery key is optional at registration
    but required to ever rotate or revoke.
    """

    handle: str
    signing_key: str
    recovery_key: str | None = None
    status: IdentityStatus = IdentityStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    key_rotated_at: datetime | None = None
    rotation_history: list[RotationEvent] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE

    def public_view(self) -> dict[str, Any]:
        """Public representation (no history details beyond a count)."""
        return {
            "handle": self.handle,
            "signing_key": self.signing_key,
            "has_recovery_key": self.recovery_key is not None,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "key_rotated_at": self.key_rotated_at.isoformat() if self.key_rotated_at else None,
            "rotation_count": len(self.rotation_history),
        }


@dataclass
class AuditEvent:
    """An audit-log entry for an identity operation."""

    event_type: str
    handle: str
    success: bool
    details: dict[str, Any] = field(default_factory=dict)
    client_address: str | None = None
    id: str = field(default_factory=lambda: f"audit_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "handle": self.handle,
            "success": self.success,
            "details": self.details,
            "client_address": self.client_address,
            "created_at": self.created_at.isoformat(),
        }
