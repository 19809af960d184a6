# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Nonce ledger for replay protection.

Records (identity, nonce) pairs. Recording is an atomic insert-if-absent
delegated to the store, so when concurrent requests race with the same
nonce exactly one observes ``first_seen=True``.

Records only need to outlive the freshness window: an envelope whose
timestamp has left the window is rejected by the freshness gate before the
ledger is consulted. Pruning is therefore an optimisation.

Usage:
    ledger = NonceLedger(store, retention_seconds=600)

    # On receive (after the freshness gate)
    if not ledger.record(handle, envelope["nonce"]).first_seen:
        reject("replay_attack")

    # On send
    envelope["nonce"] = generate_nonce()
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .store import AuthStore

logger = logging.getLogger(__name__)

# Default retention (freshness window + future skew allowance)
DEFAULT_RETENTION_SECONDS = 600

MIN_NONCE_BYTES = 16
MAX_NONCE_LENGTH = 256

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def generate_nonce(num_bytes: int = MIN_NONCE_BYTES) -> str:
    """Generate a cryptographically random nonce.

    Returns:
        A hex string; 32 characters (128 bits of entropy) by default.
    """
    return secrets.token_hex(num_bytes)


def nonce_entropy_bytes(nonce: str) -> int:
    """Number of raw bytes a hex or base64 nonce decodes to (0 if neither)."""
    if not isinstance(nonce, str) or not nonce or len(nonce) > MAX_NONCE_LENGTH:
        return 0
    if _HEX_RE.match(nonce) and len(nonce) % 2 == 0:
        return len(nonce) // 2
    try:
        padded = nonce + "=" * (-len(nonce) % 4)
        if "-" in nonce or "_" in nonce:
            return len(base64.urlsafe_b64decode(padded.encode("ascii")))
        return len(base64.b64decode(padded.encode("ascii"), validate=True))
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return 0


def is_valid_nonce(nonce: str) -> bool:
    """True if the nonce carries at least 16 bytes of hex or base64 entropy."""
    return nonce_entropy_bytes(nonce) >= MIN_NONCE_BYTES


@dataclass(frozen=True)
class NonceRecord:
    """Result of recording a nonce."""

    first_seen: bool
    scope: str
    nonce: str


class NonceLedger:
    """Records previously seen (identity, nonce) pairs with bounded retention.

    Args:
        store: Backend providing atomic insert-if-absent.
        retention_seconds: How long a record is kept before it may be pruned.
            Must be at least the freshness window.
    """

    def __init__(self, store: AuthStore, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self._store = store
        self._retention = timedelta(seconds=retention_seconds)

    @property
    def retention(self) -> timedelta:
        return self._retention

    @staticmethod
    def scope_for(identity: str) -> str:
        """Ledger key for an identity (handles are case-insensitive)."""
        return identity.strip().lstrip("@").lower()

    def record(self, identity: str, nonce: str, now: datetime | None = None) -> NonceRecord:
        """Record a nonce for an identity.

        Returns:
            NonceRecord with ``first_seen`` False if the pair was already
            recorded (a replay).

        Raises:
            StoreUnavailableError: If the backend cannot be reached.
        """
        now = now or datetime.now(UTC)
        scope = self.scope_for(identity)
        first_seen = self._store.record_nonce(scope, nonce, now, now + self._retention)
        if not first_seen:
            logger.warning(f"Replayed nonce for @{scope}")
        return NonceRecord(first_seen=first_seen, scope=scope, nonce=nonce)

    def seen(self, identity: str, nonce: str) -> bool:
        """Read-only lookup; unlike ``record`` this never consumes the nonce."""
        return self._store.has_nonce(self.scope_for(identity), nonce)

    def prune(self, now: datetime | None = None) -> int:
        """Remove expired records. Returns the number removed."""
        return self._store.prune_nonces(now or datetime.now(UTC))
