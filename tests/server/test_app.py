"""Tests for the Starlette application: health, routing, lifespan and pruning."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient

from airc.identity.nonces import generate_nonce
from airc.identity.proofs import create_message_envelope
from airc.server import app as app_module
from airc.server.app import create_app
from airc.server.config import ServerSettings
from airc.server.metrics import get_metrics_collector
from airc.server.services import build_services, set_services


class TestHealth:
    def test_healthy(self, strict_client):
        response = strict_client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["server"] == "airc"
        assert data["store"] == "memory"
        assert data["store_status"] == "connected"
        assert data["strict_mode"] is True

    def test_degraded_when_store_unreachable(self, strict_client, store):
        store.ping = MagicMock(return_value=False)
        response = strict_client.get("/api/v1/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"


class TestRouting:
    def test_unknown_route(self, strict_client):
        assert strict_client.get("/api/v1/nothing").status_code == 404

    def test_method_not_allowed(self, strict_client):
        assert strict_client.get("/api/v1/messages").status_code == 405

    def test_cors_exposes_rate_limit_headers(self, make_client, monkeypatch):
        monkeypatch.setenv("AIRC_ALLOWED_ORIGINS", '["https://example.org"]')
        client = make_client(strict_mode=True)
        response = client.get("/api/v1/health", headers={"Origin": "https://example.org"})
        exposed = response.headers["access-control-expose-headers"]
        assert "Retry-After" in exposed
        assert "X-RateLimit-Remaining" in exposed


class TestMetricsIntegration:
    def test_auth_decisions_exported(self, strict_client, alice, signing_key):
        envelope = create_message_envelope("alice", "bob", "hi", signing_key)
        strict_client.post("/api/v1/messages", json=envelope)
        strict_client.post("/api/v1/messages", json=envelope)

        text = strict_client.get("/metrics").text
        assert 'airc_auth_decisions_total{operation="message",outcome="accepted"} 1' in text
        assert 'airc_auth_decisions_total{operation="message",outcome="replay_attack"} 1' in text
        assert 'path="/api/v1/messages",status="401"' in text

    def test_identity_paths_normalized(self, strict_client):
        strict_client.get("/api/v1/identity/somebody")
        text = strict_client.get("/api/v1/metrics").text
        assert 'path="/api/v1/identity/{handle}"' in text
        assert "somebody" not in text


class TestLifespan:
    def test_startup_and_shutdown(self, store):
        set_services(build_services(store, ServerSettings(strict_mode=True)))
        with TestClient(create_app()) as client:
            assert client.get("/api/v1/health").status_code == 200

    def test_prune_disabled(self, store, monkeypatch):
        monkeypatch.setenv("AIRC_NONCE_PRUNE_INTERVAL_SECONDS", "0")
        set_services(build_services(store, ServerSettings(strict_mode=True)))
        with TestClient(create_app()) as client:
            assert client.get("/api/v1/health").status_code == 200


class TestPruneTask:
    async def test_prunes_expired_nonces(self, store, monkeypatch):
        set_services(build_services(store, ServerSettings(strict_mode=True)))
        past = datetime.now(UTC) - timedelta(hours=1)
        store.record_nonce("alice", generate_nonce(), past, past + timedelta(seconds=1))

        sleeps = 0

        async def fake_sleep(_seconds):
            nonlocal sleeps
            sleeps += 1
            if sleeps > 1:
                raise asyncio.CancelledError

        monkeypatch.setattr(app_module.asyncio, "sleep", fake_sleep)
        with pytest.raises(asyncio.CancelledError):
            await app_module._prune_nonces_periodically(1)

        assert store.nonce_count() == 0
        assert "airc_nonces_pruned_total 1" in get_metrics_collector().format_prometheus()
