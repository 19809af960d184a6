"""Fixtures for HTTP-level tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from starlette.testclient import TestClient

from airc.server.app import create_app
from airc.server.config import ServerSettings
from airc.server.services import build_services, set_services

FAR_FUTURE = datetime(2099, 1, 1, tzinfo=UTC)


@pytest.fixture
def make_client(store):
    """Build a TestClient whose services run on the shared ``store`` fixture."""

    def _make(**overrides) -> TestClient:
        settings = ServerSettings(**overrides)
        set_services(build_services(store, settings))
        return TestClient(create_app())

    return _make


@pytest.fixture
def strict_client(make_client):
    return make_client(strict_mode=True)


@pytest.fixture
def grace_client(make_client):
    return make_client(strict_mode=None, grace_period_ends=FAR_FUTURE)
