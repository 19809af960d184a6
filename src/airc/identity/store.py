# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Durable store backends for the identity protocol.

The store holds the only shared mutable state of the protocol: spent
nonces, rate-limit counters, identities with their rotation history, and
the audit log. Every mutation that guards a security property is a single
atomic conditional write:

- ``record_nonce``: insert-if-absent
- ``increment_rate_counter``: read-then-conditionally-write
- ``commit_rotation`` / ``commit_revocation``: compare-and-swap on the
  identity plus the rate-limit marker, in one unit

Default is in-memory; the PostgreSQL backend (postgres_store.py) is used
when several workers share state.

Configure via environment variables:
    AIRC_STORE_BACKEND=memory|postgres  (default: memory)
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from ..core.exceptions import ConflictError
from .models import AuditEvent, Identity, IdentityStatus, Operation, RotationEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_AUDIT_EVENTS = 10_000


class CommitResult(str, Enum):
    """Outcome of an atomic identity mutation."""

    APPLIED = "applied"
    RATE_LIMITED = "rate_limited"
    KEY_MISMATCH = "key_mismatch"
    NOT_ACTIVE = "not_active"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class RateCounter:
    """Fixed-window counter: when the window opened and how many hits it holds."""

    window_start: datetime
    count: int

    def is_current(self, now: datetime, window: timedelta) -> bool:
        return now < self.window_start + window

    def allows(self, now: datetime, window: timedelta, limit: int) -> bool:
        return not self.is_current(now, window) or self.count < limit

    def advanced(self, now: datetime, window: timedelta) -> RateCounter:
        """Counter after one more allowed hit at ``now``."""
        if self.is_current(now, window):
            return RateCounter(window_start=self.window_start, count=self.count + 1)
        return RateCounter(window_start=now, count=1)


class AuthStore(ABC):
    """Abstract interface for protocol state."""

    # -- nonces ---------------------------------------------------------------

    @abstractmethod
    def record_nonce(self, scope: str, nonce: str, seen_at: datetime, expires_at: datetime) -> bool:
        """Insert (scope, nonce) if absent.

        Returns:
            True if this call recorded the nonce (first sighting), False if it
            was already present. Exactly one of any number of concurrent
            callers observes True.
        """

    @abstractmethod
    def has_nonce(self, scope: str, nonce: str) -> bool:
        """Whether (scope, nonce) is on the ledger. Never records anything."""

    @abstractmethod
    def prune_nonces(self, now: datetime) -> int:
        """Remove nonce records whose retention expired. Returns count removed."""

    # -- rate limits ----------------------------------------------------------

    @abstractmethod
    def get_rate_counter(self, scope: str, operation: str) -> RateCounter | None:
        """Read the current counter without modifying it."""

    @abstractmethod
    def increment_rate_counter(
        self,
        scope: str,
        operation: str,
        now: datetime,
        window: timedelta,
        limit: int,
    ) -> RateCounter | None:
        """Atomically count one hit if the window allows it.

        Returns:
            The updated counter, or None if the limit was already reached
            (in which case nothing was written).
        """

    # -- identities -----------------------------------------------------------

    @abstractmethod
    def register_identity(self, identity: Identity) -> Identity:
        """Create an identity.

        Raises:
            ConflictError: If the handle is taken.
        """

    @abstractmethod
    def get_identity(self, handle: str) -> Identity | None:
        """Return a snapshot of the identity, or None."""

    @abstractmethod
    def commit_rotation(
        self,
        event: RotationEvent,
        window: timedelta,
        limit: int,
    ) -> CommitResult:
        """Atomically swap the signing key.

        Applies only if the identity is active, its current signing key still
        equals ``event.old_key``, and the rotation rate counter allows one more
        hit at ``event.rotated_at``. On success the key is replaced, the event
        appended to the rotation history and the counter advanced, all in one
        unit; otherwise nothing changes.
        """

    @abstractmethod
    def commit_revocation(
        self,
        handle: str,
        now: datetime,
        window: timedelta,
        limit: int,
    ) -> CommitResult:
        """Atomically mark an active identity revoked and advance its counter."""

    # -- audit ----------------------------------------------------------------

    @abstractmethod
    def append_audit(self, event: AuditEvent) -> None:
        """Append an audit-log entry."""

    @abstractmethod
    def list_audit(self, handle: str | None = None, limit: int = 100) -> list[AuditEvent]:
        """Most recent audit entries first."""

    def ping(self) -> bool:
        """Return True if the backend is reachable."""
        return True


class MemoryAuthStore(AuthStore):
    """In-memory store.

    Suitable for development, tests and single-process deployments.
    All state is lost on restart. A single lock serialises every
    conditional write, which gives the same atomicity the PostgreSQL
    backend gets from its native primitives.
    """

    def __init__(self, max_audit_events: int = DEFAULT_MAX_AUDIT_EVENTS) -> None:
        self._lock = threading.Lock()
        # (scope, nonce) -> (seen_at, expires_at)
        self._nonces: dict[tuple[str, str], tuple[datetime, datetime]] = {}
        self._counters: dict[tuple[str, str], RateCounter] = {}
        self._identities: dict[str, Identity] = {}
        # Oldest events are dropped once full
        self._audit: deque[AuditEvent] = deque(maxlen=max_audit_events)

    def record_nonce(self, scope: str, nonce: str, seen_at: datetime, expires_at: datetime) -> bool:
        key = (scope, nonce)
        with self._lock:
            if key in self._nonces:
                return False
            self._nonces[key] = (seen_at, expires_at)
            return True

    def has_nonce(self, scope: str, nonce: str) -> bool:
        with self._lock:
            return (scope, nonce) in self._nonces

    def prune_nonces(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, (_, expires_at) in self._nonces.items() if expires_at < now]
            for key in expired:
                del self._nonces[key]
        if expired:
            logger.debug(f"Nonce cleanup: removed {len(expired)} expired nonces")
        return len(expired)

    def nonce_count(self) -> int:
        with self._lock:
            return len(self._nonces)

    def get_rate_counter(self, scope: str, operation: str) -> RateCounter | None:
        with self._lock:
            return self._counters.get((scope, operation))

    def increment_rate_counter(
        self,
        scope: str,
        operation: str,
        now: datetime,
        window: timedelta,
        limit: int,
    ) -> RateCounter | None:
        with self._lock:
            return self._increment_locked(scope, operation, now, window, limit)

    def _increment_locked(
        self,
        scope: str,
        operation: str,
        now: datetime,
        window: timedelta,
        limit: int,
    ) -> RateCounter | None:
        key = (scope, operation)
        counter = self._counters.get(key)
        if counter is None:
            updated = RateCounter(window_start=now, count=1)
        elif counter.allows(now, window, limit):
            updated = counter.advanced(now, window)
        else:
            return None
        self._counters[key] = updated
        return updated

    def register_identity(self, identity: Identity) -> Identity:
        with self._lock:
            if identity.handle in self._identities:
                raise ConflictError(f"Handle already registered: {identity.handle}", existing_id=identity.handle)
            self._identities[identity.handle] = copy.deepcopy(identity)
        return identity

    def get_identity(self, handle: str) -> Identity | None:
        with self._lock:
            identity = self._identities.get(handle)
            return copy.deepcopy(identity) if identity is not None else None

    def commit_rotation(self, event: RotationEvent, window: timedelta, limit: int) -> CommitResult:
        with self._lock:
            identity = self._identities.get(event.handle)
            if identity is None:
                return CommitResult.NOT_FOUND
            if identity.status != IdentityStatus.ACTIVE:
                return CommitResult.NOT_ACTIVE
            if identity.signing_key != event.old_key:
                return CommitResult.KEY_MISMATCH
            if self._increment_locked(event.handle, Operation.ROTATION.value, event.rotated_at, window, limit) is None:
                return CommitResult.RATE_LIMITED

            identity.signing_key = event.new_key
            identity.key_rotated_at = event.rotated_at
            identity.rotation_history.append(copy.deepcopy(event))
            return CommitResult.APPLIED

    def commit_revocation(self, handle: str, now: datetime, window: timedelta, limit: int) -> CommitResult:
        with self._lock:
            identity = self._identities.get(handle)
            if identity is None:
                return CommitResult.NOT_FOUND
            if identity.status != IdentityStatus.ACTIVE:
                return CommitResult.NOT_ACTIVE
            if self._increment_locked(handle, Operation.REVOCATION.value, now, window, limit) is None:
                return CommitResult.RATE_LIMITED
            identity.status = IdentityStatus.REVOKED
            return CommitResult.APPLIED

    def append_audit(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit.append(event)

    def list_audit(self, handle: str | None = None, limit: int = 100) -> list[AuditEvent]:
        with self._lock:
            events = [e for e in self._audit if handle is None or e.handle == handle]
        return list(reversed(events))[:limit]

    def clear(self) -> None:
        """Remove all state."""
        with self._lock:
            self._nonces.clear()
            self._counters.clear()
            self._identities.clear()
            self._audit.clear()


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_store: AuthStore | None = None
_store_lock = threading.Lock()


def create_store(backend: str | None = None) -> AuthStore:
    """Create a store for the configured backend."""
    from ..core.config import get_config

    backend = (backend or get_config().store_backend).lower()
    if backend == "postgres":
        from .postgres_store import PostgresAuthStore

        return PostgresAuthStore()
    return MemoryAuthStore()


def get_store() -> AuthStore:
    """Get the global store instance. Use reset_store() in tests."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = create_store()
                logger.info(f"Auth store initialized ({type(_store).__name__})")
    return _store


def set_store(store: AuthStore | None) -> None:
    """Install a specific store as the global instance."""
    global _store
    _store = store


def reset_store() -> None:
    """Reset the global store (for testing)."""
    global _store
    _store = None
