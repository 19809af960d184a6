"""Global test fixtures for the airc test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime

import pytest

from airc.core.config import clear_config_cache
from airc.identity.keys import KeyPair, generate_keypair
from airc.identity.models import Identity
from airc.identity.store import MemoryAuthStore, reset_store
from airc.server.config import clear_settings_cache
from airc.server.metrics import reset_metrics_collector
from airc.server.services import reset_services

# Fixed server time used by deterministic tests
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Drop AIRC_* variables and reset every module singleton around each test."""
    for key in list(os.environ):
        if key.startswith("AIRC_"):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    clear_settings_cache()
    reset_store()
    reset_services()
    reset_metrics_collector()
    yield
    clear_config_cache()
    clear_settings_cache()
    reset_store()
    reset_services()
    reset_metrics_collector()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> MemoryAuthStore:
    return MemoryAuthStore()


@pytest.fixture
def signing_key() -> KeyPair:
    return generate_keypair()


@pytest.fixture
def recovery_key() -> KeyPair:
    return generate_keypair()


@pytest.fixture
def alice(store: MemoryAuthStore, signing_key: KeyPair, recovery_key: KeyPair, now: datetime) -> Identity:
    """Registered identity with both a signing key and a recovery key."""
    identity = Identity(
        handle="alice",
        signing_key=str(signing_key.public_key),
        recovery_key=str(recovery_key.public_key),
        created_at=now,
    )
    return store.register_identity(identity)
