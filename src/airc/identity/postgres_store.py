# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""PostgreSQL store backend.

Uses the database's native conditional-write primitives so that many
stateless workers can share one store:

- nonces: ``INSERT ... ON CONFLICT DO NOTHING RETURNING``
- rate counters: conditional ``ON CONFLICT DO UPDATE ... WHERE``
- rotation/revocation: a transaction holding ``SELECT ... FOR UPDATE`` on
  the identity row, so concurrent commits for one handle serialise

Driver failures surface as StoreUnavailableError (see core/db.py).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

import psycopg2.errors
from psycopg2.extras import Json

from ..core.db import get_cursor
from ..core.exceptions import ConflictError, StoreUnavailableError
from .models import AuditEvent, Identity, IdentityStatus, Operation, RotationEvent
from .store import AuthStore, CommitResult, RateCounter

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    (
        "identities",
        """
        CREATE TABLE IF NOT EXISTS airc_identities (
            handle TEXT PRIMARY KEY,
            signing_key TEXT NOT NULL,
            recovery_key TEXT,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'suspended', 'revoked')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            key_rotated_at TIMESTAMPTZ
        )
        """,
    ),
    (
        "rotation history",
        """
        CREATE TABLE IF NOT EXISTS airc_rotation_history (
            id BIGSERIAL PRIMARY KEY,
            handle TEXT NOT NULL REFERENCES airc_identities(handle),
            old_key TEXT NOT NULL,
            new_key TEXT NOT NULL,
            nonce TEXT NOT NULL,
            proof_timestamp TEXT NOT NULL,
            rotated_at TIMESTAMPTZ NOT NULL
        )
        """,
    ),
    (
        "nonces",
        """
        CREATE TABLE IF NOT EXISTS airc_nonces (
            scope TEXT NOT NULL,
            nonce TEXT NOT NULL,
            seen_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (scope, nonce)
        )
        """,
    ),
    ("nonce expiry index", "CREATE INDEX IF NOT EXISTS idx_airc_nonces_expires ON airc_nonces(expires_at)"),
    (
        "rate counters",
        """
        CREATE TABLE IF NOT EXISTS airc_rate_counters (
            scope TEXT NOT NULL,
            operation TEXT NOT NULL,
            window_start TIMESTAMPTZ NOT NULL,
            count INTEGER NOT NULL,
            PRIMARY KEY (scope, operation)
        )
        """,
    ),
    (
        "audit log",
        """
        CREATE TABLE IF NOT EXISTS airc_audit_log (
            id TEXT PRIMARY KEY,
            event_type TEXT NOT NULL,
            handle TEXT NOT NULL,
            success BOOLEAN NOT NULL,
            details JSONB NOT NULL DEFAULT '{}',
            client_address TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
    ),
    (
        "audit handle index",
        "CREATE INDEX IF NOT EXISTS idx_airc_audit_handle ON airc_audit_log(handle, created_at DESC)",
    ),
]

# Counts one hit unless the current window is full. The WHERE clause makes
# the upsert a no-op (no row returned) when the limit is reached.
_INCREMENT_COUNTER_SQL = """
    INSERT INTO airc_rate_counters (scope, operation, window_start, count)
    VALUES (%(scope)s, %(operation)s, %(now)s, 1)
    ON CONFLICT (scope, operation) DO UPDATE SET
        window_start = CASE
            WHEN airc_rate_counters.window_start + %(window)s <= EXCLUDED.window_start
            THEN EXCLUDED.window_start ELSE airc_rate_counters.window_start END,
        count = CASE
            WHEN airc_rate_counters.window_start + %(window)s <= EXCLUDED.window_start
            THEN 1 ELSE airc_rate_counters.count + 1 END
    WHERE airc_rate_counters.window_start + %(window)s <= EXCLUDED.window_start
       OR airc_rate_counters.count < %(limit)s
    RETURNING window_start, count
"""


class _CommitAborted(Exception):
    """Raised inside a transaction to roll it back with a result."""

    def __init__(self, result: CommitResult):
        super().__init__(result.value)
        self.result = result


class PostgresAuthStore(AuthStore):
    """Store backed by PostgreSQL via the shared psycopg2 pool."""

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with get_cursor() as cur:
            for description, statement in SCHEMA_STATEMENTS:
                logger.debug(f"Ensuring schema: {description}")
                cur.execute(statement)

    def ping(self) -> bool:
        try:
            with get_cursor() as cur:
                cur.execute("SELECT 1")
            return True
        except StoreUnavailableError:
            return False

    # -- nonces ---------------------------------------------------------------

    def record_nonce(self, scope: str, nonce: str, seen_at: datetime, expires_at: datetime) -> bool:
        with get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO airc_nonces (scope, nonce, seen_at, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (scope, nonce) DO NOTHING
                RETURNING nonce
                """,
                (scope, nonce, seen_at, expires_at),
            )
            return cur.fetchone() is not None

    def has_nonce(self, scope: str, nonce: str) -> bool:
        with get_cursor() as cur:
            cur.execute("SELECT 1 FROM airc_nonces WHERE scope = %s AND nonce = %s", (scope, nonce))
            return cur.fetchone() is not None

    def prune_nonces(self, now: datetime) -> int:
        with get_cursor() as cur:
            cur.execute("DELETE FROM airc_nonces WHERE expires_at < %s", (now,))
            removed = cur.rowcount
        if removed:
            logger.debug(f"Nonce cleanup: removed {removed} expired nonces")
        return removed

    # -- rate limits ----------------------------------------------------------

    def get_rate_counter(self, scope: str, operation: str) -> RateCounter | None:
        with get_cursor() as cur:
            cur.execute(
                "SELECT window_start, count FROM airc_rate_counters WHERE scope = %s AND operation = %s",
                (scope, operation),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return RateCounter(window_start=row["window_start"], count=row["count"])

    def increment_rate_counter(
        self,
        scope: str,
        operation: str,
        now: datetime,
        window: timedelta,
        limit: int,
    ) -> RateCounter | None:
        with get_cursor() as cur:
            return self._increment(cur, scope, operation, now, window, limit)

    @staticmethod
    def _increment(
        cur: Any,
        scope: str,
        operation: str,
        now: datetime,
        window: timedelta,
        limit: int,
    ) -> RateCounter | None:
        cur.execute(
            _INCREMENT_COUNTER_SQL,
            {"scope": scope, "operation": operation, "now": now, "window": window, "limit": limit},
        )
        row = cur.fetchone()
        if row is None:
            return None
        return RateCounter(window_start=row["window_start"], count=row["count"])

    # -- identities -----------------------------------------------------------

    def register_identity(self, identity: Identity) -> Identity:
        try:
            with get_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO airc_identities (handle, signing_key, recovery_key, status, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        identity.handle,
                        identity.signing_key,
                        identity.recovery_key,
                        identity.status.value,
                        identity.created_at,
                    ),
                )
        except psycopg2.errors.UniqueViolation as e:
            raise ConflictError(f"Handle already registered: {identity.handle}", existing_id=identity.handle) from e
        return identity

    def get_identity(self, handle: str) -> Identity | None:
        with get_cursor() as cur:
            cur.execute(
                """
                SELECT handle, signing_key, recovery_key, status, created_at, key_rotated_at
                FROM airc_identities WHERE handle = %s
                """,
                (handle,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute(
                """
                SELECT handle, old_key, new_key, nonce, proof_timestamp, rotated_at
                FROM airc_rotation_history WHERE handle = %s ORDER BY id
                """,
                (handle,),
            )
            history = [RotationEvent(**dict(r)) for r in cur.fetchall()]

        return Identity(
            handle=row["handle"],
            signing_key=row["signing_key"],
            recovery_key=row["recovery_key"],
            status=IdentityStatus(row["status"]),
            created_at=row["created_at"],
            key_rotated_at=row["key_rotated_at"],
            rotation_history=history,
        )

    def _lock_identity(self, cur: Any, handle: str) -> dict[str, Any]:
        cur.execute(
            "SELECT signing_key, status FROM airc_identities WHERE handle = %s FOR UPDATE",
            (handle,),
        )
        row = cur.fetchone()
        if row is None:
            raise _CommitAborted(CommitResult.NOT_FOUND)
        if row["status"] != IdentityStatus.ACTIVE.value:
            raise _CommitAborted(CommitResult.NOT_ACTIVE)
        return row

    def commit_rotation(self, event: RotationEvent, window: timedelta, limit: int) -> CommitResult:
        try:
            with get_cursor() as cur:
                row = self._lock_identity(cur, event.handle)
                if row["signing_key"] != event.old_key:
                    raise _CommitAborted(CommitResult.KEY_MISMATCH)
                counted = self._increment(cur, event.handle, Operation.ROTATION.value, event.rotated_at, window, limit)
                if counted is None:
                    raise _CommitAborted(CommitResult.RATE_LIMITED)

                cur.execute(
                    "UPDATE airc_identities SET signing_key = %s, key_rotated_at = %s WHERE handle = %s",
                    (event.new_key, event.rotated_at, event.handle),
                )
                cur.execute(
                    """
                    INSERT INTO airc_rotation_history
                        (handle, old_key, new_key, nonce, proof_timestamp, rotated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        event.handle,
                        event.old_key,
                        event.new_key,
                        event.nonce,
                        event.proof_timestamp,
                        event.rotated_at,
                    ),
                )
        except _CommitAborted as aborted:
            return aborted.result
        return CommitResult.APPLIED

    def commit_revocation(self, handle: str, now: datetime, window: timedelta, limit: int) -> CommitResult:
        try:
            with get_cursor() as cur:
                self._lock_identity(cur, handle)
                if self._increment(cur, handle, Operation.REVOCATION.value, now, window, limit) is None:
                    raise _CommitAborted(CommitResult.RATE_LIMITED)
                cur.execute(
                    "UPDATE airc_identities SET status = %s WHERE handle = %s",
                    (IdentityStatus.REVOKED.value, handle),
                )
        except _CommitAborted as aborted:
            return aborted.result
        return CommitResult.APPLIED

    # -- audit ----------------------------------------------------------------

    def append_audit(self, event: AuditEvent) -> None:
        with get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO airc_audit_log (id, event_type, handle, success, details, client_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.handle,
                    event.success,
                    Json(event.details),
                    event.client_address,
                    event.created_at,
                ),
            )

    def list_audit(self, handle: str | None = None, limit: int = 100) -> list[AuditEvent]:
        with get_cursor() as cur:
            if handle is None:
                cur.execute("SELECT * FROM airc_audit_log ORDER BY created_at DESC LIMIT %s", (limit,))
            else:
                cur.execute(
                    "SELECT * FROM airc_audit_log WHERE handle = %s ORDER BY created_at DESC LIMIT %s",
                    (handle, limit),
                )
            rows = cur.fetchall()
        return [AuditEvent(**dict(row)) for row in rows]
