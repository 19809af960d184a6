"""Tests for recovery-key rotation and revocation state machines."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from airc.core.exceptions import StoreUnavailableError
from airc.identity.keys import generate_keypair
from airc.identity.models import Identity, IdentityStatus
from airc.identity.proofs import create_revocation_proof, create_rotation_proof
from airc.identity.ratelimit import OperationLimit, RateLimiter
from airc.identity.rejections import RejectionReason
from airc.identity.rotation import (
    InvalidTransitionError,
    RevocationStateMachine,
    RotationState,
    RotationStateMachine,
    _Attempt,
)
from airc.identity.signatures import sign_envelope
from airc.identity.store import CommitResult


@pytest.fixture
def machine(store):
    return RotationStateMachine(store)


@pytest.fixture
def revoker(store):
    return RevocationStateMachine(store)


@pytest.fixture
def new_key():
    return generate_keypair()


@pytest.fixture
def proof(alice, signing_key, new_key, recovery_key, now):
    return create_rotation_proof("alice", signing_key.public_key, new_key.public_key, recovery_key, now=now)


# ============================================================================
# State transitions
# ============================================================================


class TestStateTransitions:
    def test_happy_path(self):
        attempt = _Attempt()
        for state in (RotationState.PROOF_RECEIVED, RotationState.VERIFIED, RotationState.APPLIED):
            attempt.advance(state)
        assert attempt.state.is_terminal

    def test_cannot_skip_verification(self):
        attempt = _Attempt()
        attempt.advance(RotationState.PROOF_RECEIVED)
        with pytest.raises(InvalidTransitionError):
            attempt.advance(RotationState.APPLIED)

    def test_terminal_states_are_final(self):
        attempt = _Attempt()
        attempt.advance(RotationState.PROOF_RECEIVED)
        attempt.advance(RotationState.REJECTED)
        with pytest.raises(InvalidTransitionError):
            attempt.advance(RotationState.VERIFIED)

    def test_idle_cannot_reject(self):
        with pytest.raises(InvalidTransitionError):
            _Attempt().advance(RotationState.REJECTED)


# ============================================================================
# Rotation
# ============================================================================


class TestRotation:
    def test_successful_rotation(self, machine, store, proof, new_key, now):
        outcome = machine.process("alice", proof, now)

        assert outcome.applied
        assert outcome.states == (
            RotationState.IDLE,
            RotationState.PROOF_RECEIVED,
            RotationState.VERIFIED,
            RotationState.APPLIED,
        )
        identity = store.get_identity("alice")
        assert identity.signing_key == str(new_key.public_key)
        assert identity.key_rotated_at == now
        assert len(identity.rotation_history) == 1

        body = outcome.to_dict()
        assert body["success"] is True
        assert body["new_key"] == str(new_key.public_key)
        assert body["message"] == "Key rotated successfully. Old key is now invalid."

    def test_identical_proof_resubmitted_is_replay(self, machine, alice, proof, now):
        assert machine.process("alice", proof, now).applied

        replay = machine.process("alice", proof, now + timedelta(seconds=1))
        assert replay.reason == RejectionReason.REPLAY_ATTACK
        assert replay.rate_limit is None

    def test_replayed_proof_outside_cooldown(self, store, alice, proof, now):
        limiter = RateLimiter(store, {"rotation": OperationLimit(max_requests=5, window_seconds=3600)})
        machine = RotationStateMachine(store, rate_limiter=limiter)
        assert machine.process("alice", proof, now).applied

        replay = machine.process("alice", proof, now + timedelta(seconds=1))
        assert replay.reason == RejectionReason.REPLAY_ATTACK
        assert replay.rejection.http_status == 401

    def test_forged_proof_still_consumes_nonce(self, machine, alice, proof, now):
        first = machine.process("alice", dict(proof, signature="AAAA"), now)
        assert first.reason == RejectionReason.INVALID_PROOF

        second = machine.process("alice", proof, now)
        assert second.reason == RejectionReason.REPLAY_ATTACK

    def test_second_rotation_rate_limited(self, machine, signing_key, new_key, recovery_key, proof, now):
        assert machine.process("alice", proof, now).applied

        third_key = generate_keypair()
        follow_up = create_rotation_proof("alice", new_key.public_key, third_key.public_key, recovery_key, now=now)
        outcome = machine.process("alice", follow_up, now + timedelta(minutes=1))

        assert outcome.reason == RejectionReason.RATE_LIMITED
        assert outcome.rejection.details["retry_after"] == 3540
        assert outcome.rate_limit.headers()["Retry-After"] == "3540"

    def test_rotation_allowed_after_cooldown(self, machine, store, new_key, recovery_key, proof, now):
        machine.process("alice", proof, now)
        later = now + timedelta(hours=1)
        third_key = generate_keypair()
        follow_up = create_rotation_proof("alice", new_key.public_key, third_key.public_key, recovery_key, now=later)

        assert machine.process("alice", follow_up, later).applied
        assert len(store.get_identity("alice").rotation_history) == 2

    def test_signed_with_signing_key_rejected(self, machine, store, alice, signing_key, new_key, now):
        proof = create_rotation_proof("alice", signing_key.public_key, new_key.public_key, signing_key, now=now)
        outcome = machine.process("alice", proof, now)
        assert outcome.reason == RejectionReason.INVALID_PROOF
        assert store.get_identity("alice").signing_key == alice.signing_key

    def test_old_key_mismatch(self, machine, alice, new_key, recovery_key, now):
        wrong_old = generate_keypair()
        proof = create_rotation_proof("alice", wrong_old.public_key, new_key.public_key, recovery_key, now=now)
        outcome = machine.process("alice", proof, now)
        assert outcome.reason == RejectionReason.INVALID_PROOF
        assert RotationState.VERIFIED not in outcome.states

    def test_rejected_attempt_does_not_count(self, machine, store, alice, signing_key, new_key, now):
        forged = create_rotation_proof("alice", signing_key.public_key, new_key.public_key, generate_keypair(), now=now)
        machine.process("alice", forged, now)
        assert store.get_rate_counter("alice", "rotation") is None

    def test_stale_proof(self, machine, alice, signing_key, new_key, recovery_key, now):
        proof = create_rotation_proof(
            "alice", signing_key.public_key, new_key.public_key, recovery_key, now=now - timedelta(minutes=10)
        )
        assert machine.process("alice", proof, now).reason == RejectionReason.TIMESTAMP_EXPIRED

    def test_forward_dated_proof(self, machine, alice, signing_key, new_key, recovery_key, now):
        proof = create_rotation_proof(
            "alice", signing_key.public_key, new_key.public_key, recovery_key, now=now + timedelta(hours=1)
        )
        assert machine.process("alice", proof, now).reason == RejectionReason.TIMESTAMP_EXPIRED


class TestRotationPreconditions:
    def test_no_recovery_key(self, machine, store, now):
        keys = generate_keypair()
        store.register_identity(Identity(handle="bob", signing_key=str(keys.public_key)))
        proof = create_rotation_proof("bob", keys.public_key, generate_keypair().public_key, keys, now=now)
        outcome = machine.process("bob", proof, now)
        assert outcome.reason == RejectionReason.NO_RECOVERY_KEY
        assert outcome.rejection.http_status == 400

    def test_unknown_identity(self, machine, recovery_key, now):
        keys = generate_keypair()
        proof = create_rotation_proof("ghost", keys.public_key, generate_keypair().public_key, recovery_key, now=now)
        assert machine.process("ghost", proof, now).reason == RejectionReason.INVALID_PROOF

    def test_revoked_identity(self, machine, store, proof, now):
        store.commit_revocation("alice", now, timedelta(days=1), 1)
        assert machine.process("alice", proof, now).reason == RejectionReason.IDENTITY_REVOKED

    def test_suspended_identity(self, machine, store, recovery_key, now):
        keys = generate_keypair()
        store.register_identity(
            Identity(
                handle="carol",
                signing_key=str(keys.public_key),
                recovery_key=str(recovery_key.public_key),
                status=IdentityStatus.SUSPENDED,
            )
        )
        proof = create_rotation_proof("carol", keys.public_key, generate_keypair().public_key, recovery_key, now=now)
        assert machine.process("carol", proof, now).reason == RejectionReason.IDENTITY_SUSPENDED


class TestRotationStructure:
    @pytest.mark.parametrize("field", ["old_key", "new_key", "timestamp", "nonce", "signature"])
    def test_missing_field(self, machine, proof, now, field):
        del proof[field]
        outcome = machine.process("alice", proof, now)
        assert outcome.reason == RejectionReason.MISSING_FIELD
        assert outcome.rejection.details["field"] == field

    def test_not_an_object(self, machine, alice, now):
        assert machine.process("alice", "proof", now).reason == RejectionReason.MISSING_FIELD

    def test_wrong_operation(self, machine, proof, recovery_key, now):
        tampered = sign_envelope(dict(proof, operation="revoke"), recovery_key)
        outcome = machine.process("alice", tampered, now)
        assert outcome.reason == RejectionReason.INVALID_OPERATION
        assert outcome.rejection.details["expected"] == "rotate"

    def test_handle_mismatch(self, machine, proof, now):
        assert machine.process("bob", proof, now).reason == RejectionReason.HANDLE_MISMATCH

    def test_handle_is_case_insensitive(self, machine, proof, now):
        assert machine.process("@ALICE", proof, now).applied

    def test_invalid_url_handle(self, machine, proof, now):
        outcome = machine.process("not valid!", proof, now)
        assert outcome.reason == RejectionReason.INVALID_PROOF

    def test_invalid_new_key(self, machine, proof, recovery_key, now):
        tampered = sign_envelope(dict(proof, new_key="rsa:AAAA"), recovery_key)
        outcome = machine.process("alice", tampered, now)
        assert outcome.reason == RejectionReason.INVALID_KEY
        assert outcome.rejection.details["field"] == "new_key"

    def test_invalid_nonce(self, machine, proof, recovery_key, now):
        tampered = sign_envelope(dict(proof, nonce="1234"), recovery_key)
        assert machine.process("alice", tampered, now).reason == RejectionReason.INVALID_NONCE

    def test_invalid_timestamp(self, machine, proof, recovery_key, now):
        tampered = sign_envelope(dict(proof, timestamp="soon"), recovery_key)
        assert machine.process("alice", tampered, now).reason == RejectionReason.INVALID_TIMESTAMP

    @pytest.mark.parametrize("signature", [7, [1], {"x": 1}])
    def test_non_string_signature_rejected_before_nonce(self, machine, store, proof, now, signature):
        outcome = machine.process("alice", dict(proof, signature=signature), now)
        assert outcome.reason == RejectionReason.MISSING_FIELD
        assert outcome.rejection.details["field"] == "signature"
        assert len(store.list_audit("alice")) == 1

        assert machine.process("alice", proof, now).applied


class TestCommitRace:
    def test_key_changed_between_verify_and_commit(self, store, alice, proof, now):
        machine = RotationStateMachine(store)
        store.commit_rotation = MagicMock(return_value=CommitResult.KEY_MISMATCH)
        outcome = machine.process("alice", proof, now)
        assert outcome.reason == RejectionReason.INVALID_PROOF
        assert outcome.states[-2:] == (RotationState.VERIFIED, RotationState.REJECTED)

    def test_revoked_between_verify_and_commit(self, store, alice, proof, now):
        machine = RotationStateMachine(store)
        store.commit_rotation = MagicMock(return_value=CommitResult.NOT_ACTIVE)
        assert machine.process("alice", proof, now).reason == RejectionReason.IDENTITY_REVOKED


# ============================================================================
# Audit
# ============================================================================


class TestAudit:
    def test_every_outcome_audited(self, machine, store, proof, now):
        machine.process("alice", proof, now)
        machine.process("alice", proof, now)

        events = store.list_audit("alice")
        assert [e.success for e in events] == [False, True]
        assert events[0].details["reason"] == "replay_attack"
        assert events[1].details["new_key"] == proof["new_key"]
        assert "signature" not in events[1].details

    def test_client_address_recorded(self, machine, store, proof, now):
        machine.process("alice", proof, now, client_address="203.0.113.7")
        assert store.list_audit("alice")[0].client_address == "203.0.113.7"

    def test_audit_failure_does_not_fail_operation(self, machine, store, proof, now, caplog):
        store.append_audit = MagicMock(side_effect=StoreUnavailableError("down"))
        assert machine.process("alice", proof, now).applied
        assert "Failed to append key_rotation audit event" in caplog.text


# ============================================================================
# Revocation
# ============================================================================


class TestRevocation:
    def test_successful_revocation(self, revoker, store, alice, recovery_key, now):
        proof = create_revocation_proof("alice", recovery_key, reason="key compromised", now=now)
        outcome = revoker.process("alice", proof, now)

        assert outcome.applied
        assert store.get_identity("alice").status == IdentityStatus.REVOKED
        body = outcome.to_dict()
        assert body["status"] == "revoked"
        assert body["reason"] == "key compromised"
        assert body["message"] == "Identity revoked."

    def test_revoked_identity_cannot_rotate(self, revoker, machine, alice, recovery_key, proof, now):
        revoker.process("alice", create_revocation_proof("alice", recovery_key, now=now), now)
        assert machine.process("alice", proof, now).reason == RejectionReason.IDENTITY_REVOKED

    def test_signing_key_cannot_revoke(self, revoker, store, alice, signing_key, now):
        proof = create_revocation_proof("alice", signing_key, now=now)
        assert revoker.process("alice", proof, now).reason == RejectionReason.INVALID_PROOF
        assert store.get_identity("alice").is_active

    def test_rotation_proof_cannot_revoke(self, revoker, proof, now):
        assert revoker.process("alice", proof, now).reason == RejectionReason.INVALID_OPERATION

    def test_audit_event_type(self, revoker, store, alice, recovery_key, now):
        revoker.process("alice", create_revocation_proof("alice", recovery_key, now=now), now)
        assert store.list_audit("alice")[0].event_type == "identity_revocation"
