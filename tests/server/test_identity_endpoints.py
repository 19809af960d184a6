"""Tests for identity registration, rotation and revocation endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from airc.core.exceptions import StoreUnavailableError
from airc.identity.keys import generate_keypair
from airc.identity.models import Identity
from airc.identity.proofs import create_message_envelope, create_revocation_proof, create_rotation_proof


@pytest.fixture
def client(strict_client):
    return strict_client


def rotate(client, handle, proof, prefix=""):
    return client.post(f"{prefix}/identity/{handle}/rotate", json={"proof": proof})


def revoke(client, handle, proof, prefix=""):
    return client.post(f"{prefix}/identity/{handle}/revoke", json={"proof": proof})


# ============================================================================
# Registration
# ============================================================================


class TestRegister:
    def test_register_with_recovery_key(self, client, store):
        signing, recovery = generate_keypair(), generate_keypair()
        response = client.post(
            "/api/v1/identity",
            json={
                "handle": "@Dave",
                "signing_key": str(signing.public_key),
                "recovery_key": str(recovery.public_key),
            },
        )
        assert response.status_code == 201
        data = response.json()
        assert data["handle"] == "dave"
        assert data["recovery_key"] == str(recovery.public_key)
        assert store.get_identity("dave").recovery_key == str(recovery.public_key)

    def test_register_without_recovery_key_warns(self, client):
        response = client.post(
            "/api/v1/identity",
            json={"handle": "erin", "signing_key": str(generate_keypair().public_key)},
        )
        assert response.status_code == 201
        assert "warning" in response.json()
        assert "recovery_key" not in response.json()

    def test_duplicate_handle(self, client, alice):
        response = client.post(
            "/api/v1/identity",
            json={"handle": "alice", "signing_key": str(generate_keypair().public_key)},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "handle_taken"

    def test_invalid_handle(self, client):
        response = client.post(
            "/api/v1/identity",
            json={"handle": "no spaces!", "signing_key": str(generate_keypair().public_key)},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_handle"

    def test_invalid_key(self, client):
        response = client.post("/api/v1/identity", json={"handle": "frank", "signing_key": "rsa:AAAA"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_key"
        assert response.json()["field"] == "signing_key"

    def test_missing_signing_key(self, client):
        response = client.post("/api/v1/identity", json={"handle": "frank"})
        assert response.status_code == 400
        assert response.json()["field"] == "signing_key"

    def test_registration_rate_limit(self, make_client):
        client = make_client(strict_mode=True, registration_rate_limit=1)
        first = client.post(
            "/api/v1/identity", json={"handle": "g1", "signing_key": str(generate_keypair().public_key)}
        )
        assert first.status_code == 201

        second = client.post(
            "/api/v1/identity", json={"handle": "g2", "signing_key": str(generate_keypair().public_key)}
        )
        assert second.status_code == 429
        assert "Retry-After" in second.headers


class TestGetIdentity:
    def test_public_view(self, client, alice):
        response = client.get("/api/v1/identity/@alice")
        assert response.status_code == 200
        identity = response.json()["identity"]
        assert identity["handle"] == "alice"
        assert identity["has_recovery_key"] is True
        assert "recovery_key" not in identity

    def test_unknown(self, client):
        assert client.get("/api/v1/identity/nobody").status_code == 404

    def test_invalid_handle(self, client):
        assert client.get("/api/v1/identity/bad!handle").status_code == 404


# ============================================================================
# Rotation
# ============================================================================


class TestRotateEndpoint:
    def test_rotation_switches_signing_key(self, client, store, alice, signing_key, recovery_key):
        new_key = generate_keypair()
        proof = create_rotation_proof("alice", signing_key.public_key, new_key.public_key, recovery_key)

        response = rotate(client, "alice", proof)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["new_key"] == str(new_key.public_key)
        assert response.headers["X-RateLimit-Operation"] == "rotation"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" not in response.headers

        old = client.post("/api/v1/messages", json=create_message_envelope("alice", "bob", "x", signing_key))
        assert old.json()["error"] == "invalid_signature"
        new = client.post("/api/v1/messages", json=create_message_envelope("alice", "bob", "x", new_key))
        assert new.status_code == 200

    def test_versioned_path(self, client, alice, signing_key, recovery_key):
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        assert rotate(client, "alice", proof, prefix="/api/v1").status_code == 200

    def test_second_rotation_rate_limited(self, client, alice, signing_key, recovery_key):
        new_key = generate_keypair()
        proof = create_rotation_proof("alice", signing_key.public_key, new_key.public_key, recovery_key)
        assert rotate(client, "alice", proof).status_code == 200

        follow_up = create_rotation_proof("alice", new_key.public_key, generate_keypair().public_key, recovery_key)
        response = rotate(client, "alice", follow_up)
        assert response.status_code == 429
        assert response.json()["error"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 3500

    def test_identical_resubmission_is_replay(self, client, alice, signing_key, recovery_key):
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        assert rotate(client, "alice", proof).status_code == 200

        response = rotate(client, "alice", proof)
        assert response.status_code == 401
        assert response.json()["error"] == "replay_attack"
        assert "Retry-After" not in response.headers

    def test_replayed_proof(self, client, alice, signing_key, recovery_key):
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        forged = dict(proof, signature="AAAA")
        assert rotate(client, "alice", forged).json()["error"] == "invalid_proof"

        response = rotate(client, "alice", proof)
        assert response.status_code == 401
        assert response.json()["error"] == "replay_attack"

    def test_signing_key_cannot_authorize(self, client, alice, signing_key):
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, signing_key)
        response = rotate(client, "alice", proof)
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_proof"

    def test_no_recovery_key(self, client, store):
        keys = generate_keypair()
        store.register_identity(Identity(handle="bob", signing_key=str(keys.public_key)))
        proof = create_rotation_proof("bob", keys.public_key, generate_keypair().public_key, keys)

        response = rotate(client, "bob", proof)
        assert response.status_code == 400
        assert response.json()["error"] == "no_recovery_key"

    def test_handle_mismatch(self, client, alice, signing_key, recovery_key):
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        assert rotate(client, "bob", proof).json()["error"] == "handle_mismatch"

    def test_missing_proof(self, client, alice):
        response = client.post("/identity/alice/rotate", json={"not_proof": {}})
        assert response.status_code == 400
        assert response.json()["field"] == "proof"

    def test_non_string_signature(self, client, store, alice, signing_key, recovery_key):
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        response = rotate(client, "alice", dict(proof, signature=[1]))
        assert response.status_code == 400
        assert response.json()["field"] == "signature"
        assert len(store.list_audit("alice")) == 1

        assert rotate(client, "alice", proof).status_code == 200

    def test_invalid_json(self, client, alice):
        response = client.post(
            "/identity/alice/rotate", content=b"nope", headers={"Content-Type": "application/json"}
        )
        assert response.json()["error"] == "invalid_json"

    def test_store_unavailable(self, client, store, alice, signing_key, recovery_key):
        store.get_identity = MagicMock(side_effect=StoreUnavailableError("down"))
        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        response = rotate(client, "alice", proof)
        assert response.status_code == 503
        assert response.json()["retryable"] is True


# ============================================================================
# Revocation
# ============================================================================


class TestRevokeEndpoint:
    def test_revoke_then_rotate_forbidden(self, client, store, alice, signing_key, recovery_key):
        response = revoke(client, "alice", create_revocation_proof("alice", recovery_key, reason="compromised"))
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "revoked"
        assert data["reason"] == "compromised"

        proof = create_rotation_proof("alice", signing_key.public_key, generate_keypair().public_key, recovery_key)
        response = rotate(client, "alice", proof)
        assert response.status_code == 403
        assert response.json()["error"] == "identity_revoked"

    def test_revoked_identity_cannot_message(self, client, alice, signing_key, recovery_key):
        revoke(client, "alice", create_revocation_proof("alice", recovery_key))
        response = client.post("/api/v1/messages", json=create_message_envelope("alice", "bob", "x", signing_key))
        assert response.status_code == 401

    def test_revocation_audited(self, client, store, alice, recovery_key):
        revoke(client, "alice", create_revocation_proof("alice", recovery_key), prefix="/api/v1")
        event = store.list_audit("alice")[0]
        assert event.event_type == "identity_revocation"
        assert event.success is True
        assert event.client_address == "testclient"
