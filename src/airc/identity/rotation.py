# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Recovery-key authorised identity changes: key rotation and revocation.

Both operations run the same state machine:

    idle -> proof_received -> verified -> applied
                          \\-> rejected  <-/

Transition logic:

1. Structural checks on the proof (malformed input, no crypto work).
2. Identity lookup: active status and a recovery key on file are required.
3. Rate-limit check. Read-only, so rejected attempts never count. During a
   cooldown a proof whose nonce is already on the ledger is reported as a
   replay rather than as rate limited; nothing is consumed either way.
4. Freshness, then nonce recording, then signature verification against the
   identity's RECOVERY key. The nonce is consumed before the signature is
   checked, so an identical proof presented twice is always a replay.
5. Atomic commit in the store: compare-and-swap on the identity plus the
   rate-limit marker, in one unit.

Every outcome is written to the audit log.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..core.config import CoreSettings
from ..core.exceptions import AircException, StoreUnavailableError, ValidationException
from ..core.logging import auth_logger
from .canonical import canonicalize
from .freshness import FreshnessGate, parse_timestamp
from .keys import PublicKey, same_key
from .models import AuditEvent, Identity, IdentityStatus, Operation, RotationEvent, normalize_handle
from .nonces import NonceLedger, is_valid_nonce
from .ratelimit import RateLimitDecision, RateLimiter, limits_from_settings
from .rejections import Rejection, RejectionReason
from .signatures import SignatureVerifier
from .store import AuthStore, CommitResult

logger = logging.getLogger(__name__)

ROTATE_OPERATION = "rotate"
REVOKE_OPERATION = "revoke"


class RotationState(str, Enum):
    """States of a recovery-key authorised operation."""

    IDLE = "idle"
    PROOF_RECEIVED = "proof_received"
    VERIFIED = "verified"
    APPLIED = "applied"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (RotationState.APPLIED, RotationState.REJECTED)


_TRANSITIONS: dict[RotationState, frozenset[RotationState]] = {
    RotationState.IDLE: frozenset({RotationState.PROOF_RECEIVED}),
    RotationState.PROOF_RECEIVED: frozenset({RotationState.VERIFIED, RotationState.REJECTED}),
    RotationState.VERIFIED: frozenset({RotationState.APPLIED, RotationState.REJECTED}),
    RotationState.APPLIED: frozenset(),
    RotationState.REJECTED: frozenset(),
}


class InvalidTransitionError(AircException):
    """An illegal state transition was attempted."""

    def __init__(self, current: RotationState, target: RotationState):
        super().__init__(
            f"Cannot move from {current.value} to {target.value}",
            details={"current": current.value, "target": target.value},
        )


class _Attempt:
    """Tracks the state of one attempt."""

    def __init__(self) -> None:
        self.state = RotationState.IDLE
        self.history: list[RotationState] = [RotationState.IDLE]

    def advance(self, target: RotationState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        self.state = target
        self.history.append(target)


@dataclass(frozen=True)
class RotationOutcome:
    """Terminal result of a rotation or revocation attempt."""

    operation: str
    handle: str
    state: RotationState
    rejection: Rejection | None = None
    event: RotationEvent | None = None
    rate_limit: RateLimitDecision | None = None
    states: tuple[RotationState, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.state == RotationState.APPLIED

    @property
    def reason(self) -> RejectionReason | None:
        return self.rejection.reason if self.rejection else None

    def to_dict(self) -> dict[str, Any]:
        if self.rejection is not None:
            return self.rejection.to_dict()
        body: dict[str, Any] = {"success": True, "handle": self.handle}
        body.update(self.details)
        return body


class RecoveryAuthorizedMachine(ABC):
    """Shared flow for operations authorised by an identity's recovery key."""

    operation: Operation
    operation_tag: str
    event_type: str
    required_fields: tuple[str, ...]

    def __init__(
        self,
        store: AuthStore,
        gate: FreshnessGate | None = None,
        ledger: NonceLedger | None = None,
        verifier: SignatureVerifier | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.store = store
        self.gate = gate or FreshnessGate()
        self.ledger = ledger or NonceLedger(store)
        self.verifier = verifier or SignatureVerifier()
        self.rate_limiter = rate_limiter or RateLimiter(store)

    @classmethod
    def from_settings(cls, store: AuthStore, settings: CoreSettings):
        return cls(
            store=store,
            gate=FreshnessGate(
                window_seconds=settings.freshness_window_seconds,
                max_future_skew_seconds=settings.max_future_skew_seconds,
                skew_warning_seconds=settings.skew_warning_seconds,
            ),
            ledger=NonceLedger(store, retention_seconds=settings.nonce_retention_seconds),
            rate_limiter=RateLimiter(store, limits_from_settings(settings)),
        )

    # -- hooks ----------------------------------------------------------------

    def _validate_fields(self, proof: Mapping[str, Any]) -> Rejection | None:
        """Operation-specific structural checks."""
        return None

    def _check_verified(self, identity: Identity, proof: Mapping[str, Any]) -> Rejection | None:
        """Checks that only make sense once the proof is authentic."""
        return None

    @abstractmethod
    def _commit(
        self,
        identity: Identity,
        proof: Mapping[str, Any],
        now: datetime,
    ) -> tuple[CommitResult, RotationEvent | None, dict[str, Any]]:
        """Apply the change atomically. Returns (result, event, response details)."""

    # -- flow -----------------------------------------------------------------

    def _validate_structure(self, handle: str, proof: Any) -> Rejection | None:
        if not isinstance(proof, Mapping):
            return Rejection.of(RejectionReason.MISSING_FIELD, "Missing required field: proof", field="proof")

        for name in self.required_fields:
            if proof.get(name) in (None, ""):
                return Rejection.of(RejectionReason.MISSING_FIELD, f"Missing required field: {name}", field=name)
        if not isinstance(proof["signature"], str):
            return Rejection.of(
                RejectionReason.MISSING_FIELD,
                "Field 'signature' must be a string",
                field="signature",
            )

        if proof["operation"] != self.operation_tag:
            return Rejection.of(
                RejectionReason.INVALID_OPERATION,
                f"Expected operation '{self.operation_tag}'",
                expected=self.operation_tag,
            )

        try:
            proof_handle = normalize_handle(proof["handle"])
        except ValidationException:
            proof_handle = None
        if proof_handle != handle:
            return Rejection.of(RejectionReason.HANDLE_MISMATCH)

        rejection = self._validate_fields(proof)
        if rejection is not None:
            return rejection

        try:
            parse_timestamp(proof["timestamp"])
        except ValidationException as e:
            return Rejection.of(RejectionReason.INVALID_TIMESTAMP, e.message)
        if not is_valid_nonce(proof["nonce"]):
            return Rejection.of(RejectionReason.INVALID_NONCE)
        return None

    def _check_identity(self, identity: Identity | None) -> Rejection | None:
        if identity is None:
            return Rejection.of(RejectionReason.INVALID_PROOF)
        if identity.status == IdentityStatus.REVOKED:
            return Rejection.of(RejectionReason.IDENTITY_REVOKED)
        if identity.status == IdentityStatus.SUSPENDED:
            return Rejection.of(RejectionReason.IDENTITY_SUSPENDED)
        if not identity.recovery_key:
            return Rejection.of(
                RejectionReason.NO_RECOVERY_KEY,
                "Identity has no recovery key. Cannot perform this operation.",
            )
        return None

    def _rate_limited(self, decision: RateLimitDecision) -> Rejection:
        return Rejection.of(
            RejectionReason.RATE_LIMITED,
            f"Too many {self.operation.value} attempts. Try again in {decision.retry_after_seconds}s",
            retry_after=decision.retry_after_seconds,
        )

    def _audit(
        self,
        handle: str,
        proof: Any,
        outcome: RotationOutcome,
        client_address: str | None,
    ) -> None:
        details: dict[str, Any] = {"state": outcome.state.value}
        if isinstance(proof, Mapping):
            details["nonce"] = proof.get("nonce")
            details["timestamp"] = proof.get("timestamp")
        if outcome.rejection is not None:
            details["reason"] = outcome.rejection.reason.value
        if outcome.event is not None:
            details["old_key"] = outcome.event.old_key
            details["new_key"] = outcome.event.new_key

        auth_logger.log_decision(
            self.operation.value,
            handle,
            accepted=outcome.applied,
            reason=outcome.reason.value if outcome.reason else None,
            context=details,
        )
        try:
            self.store.append_audit(
                AuditEvent(
                    event_type=self.event_type,
                    handle=handle,
                    success=outcome.applied,
                    details=details,
                    client_address=client_address,
                )
            )
        except StoreUnavailableError as e:
            logger.error(f"Failed to append {self.event_type} audit event for @{handle}: {e}")

    def process(
        self,
        handle: str,
        proof: Any,
        now: datetime | None = None,
        client_address: str | None = None,
    ) -> RotationOutcome:
        """Run one attempt to completion.

        Args:
            handle: Handle from the request path.
            proof: Signed proof object from the request body.
            now: Server time (defaults to the current time).
            client_address: Recorded in the audit log.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        now = now or datetime.now(UTC)
        attempt = _Attempt()
        attempt.advance(RotationState.PROOF_RECEIVED)

        try:
            handle = normalize_handle(handle)
        except ValidationException:
            # Unknown handles are indistinguishable from bad proofs
            return self._finish(handle, proof, attempt, Rejection.of(RejectionReason.INVALID_PROOF), client_address)

        rejection = self._validate_structure(handle, proof)
        if rejection is not None:
            return self._finish(handle, proof, attempt, rejection, client_address)

        identity = self.store.get_identity(handle)
        rejection = self._check_identity(identity)
        if rejection is not None:
            return self._finish(handle, proof, attempt, rejection, client_address)

        decision = self.rate_limiter.check(handle, self.operation, now)
        if not decision.allowed:
            if self.ledger.seen(handle, proof["nonce"]):
                replay = Rejection.of(RejectionReason.REPLAY_ATTACK)
                return self._finish(handle, proof, attempt, replay, client_address)
            return self._finish(handle, proof, attempt, self._rate_limited(decision), client_address, decision)

        freshness = self.gate.check(proof["timestamp"], now)
        if not freshness.valid:
            return self._finish(handle, proof, attempt, freshness.rejection, client_address)

        if not self.ledger.record(handle, proof["nonce"], now).first_seen:
            return self._finish(handle, proof, attempt, Rejection.of(RejectionReason.REPLAY_ATTACK), client_address)

        try:
            message = canonicalize(proof)
        except ValidationException:
            return self._finish(handle, proof, attempt, Rejection.of(RejectionReason.INVALID_PROOF), client_address)

        if not self.verifier.verify(message, proof["signature"], identity.recovery_key):
            return self._finish(handle, proof, attempt, Rejection.of(RejectionReason.INVALID_PROOF), client_address)

        rejection = self._check_verified(identity, proof)
        if rejection is not None:
            return self._finish(handle, proof, attempt, rejection, client_address)

        attempt.advance(RotationState.VERIFIED)

        result, event, details = self._commit(identity, proof, now)
        if result == CommitResult.RATE_LIMITED:
            decision = self.rate_limiter.check(handle, self.operation, now)
            return self._finish(handle, proof, attempt, self._rate_limited(decision), client_address, decision)
        if result == CommitResult.NOT_ACTIVE:
            return self._finish(handle, proof, attempt, Rejection.of(RejectionReason.IDENTITY_REVOKED), client_address)
        if result != CommitResult.APPLIED:
            logger.warning(f"{self.operation.value} for @{handle} lost a concurrent update ({result.value})")
            return self._finish(handle, proof, attempt, Rejection.of(RejectionReason.INVALID_PROOF), client_address)

        attempt.advance(RotationState.APPLIED)
        decision = self.rate_limiter.check(handle, self.operation, now)
        outcome = RotationOutcome(
            operation=self.operation.value,
            handle=handle,
            state=attempt.state,
            event=event,
            rate_limit=decision,
            states=tuple(attempt.history),
            details=details,
        )
        self._audit(handle, proof, outcome, client_address)
        return outcome

    def _finish(
        self,
        handle: str,
        proof: Any,
        attempt: _Attempt,
        rejection: Rejection,
        client_address: str | None,
        decision: RateLimitDecision | None = None,
    ) -> RotationOutcome:
        attempt.advance(RotationState.REJECTED)
        outcome = RotationOutcome(
            operation=self.operation.value,
            handle=handle,
            state=attempt.state,
            rejection=rejection,
            rate_limit=decision,
            states=tuple(attempt.history),
        )
        self._audit(handle, proof, outcome, client_address)
        return outcome


class RotationStateMachine(RecoveryAuthorizedMachine):
    """Replaces an identity's signing key on a recovery-key signed proof.

    Proof: ``{operation: "rotate", handle, old_key, new_key, timestamp, nonce, signature}``.
    """

    operation = Operation.ROTATION
    operation_tag = ROTATE_OPERATION
    event_type = "key_rotation"
    required_fields = ("operation", "handle", "old_key", "new_key", "timestamp", "nonce", "signature")

    def _validate_fields(self, proof: Mapping[str, Any]) -> Rejection | None:
        for name in ("old_key", "new_key"):
            try:
                PublicKey.parse(proof[name])
            except ValidationException as e:
                return Rejection.of(RejectionReason.INVALID_KEY, e.message, field=name)
        return None

    def _check_verified(self, identity: Identity, proof: Mapping[str, Any]) -> Rejection | None:
        if not same_key(proof["old_key"], identity.signing_key):
            return Rejection.of(RejectionReason.INVALID_PROOF, "old_key does not match the current signing key")
        return None

    def _commit(
        self,
        identity: Identity,
        proof: Mapping[str, Any],
        now: datetime,
    ) -> tuple[CommitResult, RotationEvent | None, dict[str, Any]]:
        new_key = str(PublicKey.parse(proof["new_key"]))
        event = RotationEvent(
            handle=identity.handle,
            old_key=identity.signing_key,
            new_key=new_key,
            nonce=proof["nonce"],
            rotated_at=now,
            proof_timestamp=str(proof["timestamp"]),
        )
        limit = self.rate_limiter.limit_for(self.operation)
        result = self.store.commit_rotation(event, limit.window, limit.max_requests)
        if result != CommitResult.APPLIED:
            return result, None, {}
        logger.info(f"Rotated signing key for @{identity.handle}")
        return (
            result,
            event,
            {
                "new_key": new_key,
                "rotated_at": now.isoformat(),
                "message": "Key rotated successfully. Old key is now invalid.",
            },
        )


class RevocationStateMachine(RecoveryAuthorizedMachine):
    """Permanently revokes an identity on a recovery-key signed proof.

    Proof: ``{operation: "revoke", handle, reason?, timestamp, nonce, signature}``.
    """

    operation = Operation.REVOCATION
    operation_tag = REVOKE_OPERATION
    event_type = "identity_revocation"
    required_fields = ("operation", "handle", "timestamp", "nonce", "signature")

    def _commit(
        self,
        identity: Identity,
        proof: Mapping[str, Any],
        now: datetime,
    ) -> tuple[CommitResult, RotationEvent | None, dict[str, Any]]:
        limit = self.rate_limiter.limit_for(self.operation)
        result = self.store.commit_revocation(identity.handle, now, limit.window, limit.max_requests)
        if result != CommitResult.APPLIED:
            return result, None, {}
        logger.info(f"Revoked identity @{identity.handle}")
        return (
            result,
            None,
            {
                "status": IdentityStatus.REVOKED.value,
                "revoked_at": now.isoformat(),
                "reason": proof.get("reason"),
                "message": "Identity revoked.",
            },
        )
