"""Tests for airc.core.config - CoreSettings and global config management.

Tests cover:
- Settings loading with defaults
- Environment variable overrides
- Singleton behavior (get_config / clear_config_cache)
- Computed properties (nonce_retention_seconds, connection_params)
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from airc.core.config import (
    DEFAULT_GRACE_PERIOD_END,
    CoreSettings,
    clear_config_cache,
    get_config,
)

# ============================================================================
# CoreSettings - Default Values
# ============================================================================


class TestCoreSettingsDefaults:
    """Test that CoreSettings loads with correct default values."""

    def test_store_defaults(self):
        settings = CoreSettings()

        assert settings.store_backend == "memory"
        assert settings.store_timeout_seconds == 5

    def test_database_defaults(self):
        settings = CoreSettings()

        assert settings.db_host == "localhost"
        assert settings.db_port == 5432
        assert settings.db_name == "airc"
        assert settings.db_user == "airc"
        assert settings.db_pool_min == 2
        assert settings.db_pool_max == 20

    def test_protocol_defaults(self):
        settings = CoreSettings()

        assert settings.freshness_window_seconds == 300
        assert settings.max_future_skew_seconds == 300
        assert settings.skew_warning_seconds == 60
        assert settings.rotation_cooldown_seconds == 3600
        assert settings.revocation_cooldown_seconds == 86400
        assert settings.message_rate_limit == 100
        assert settings.message_rate_window_seconds == 60
        assert settings.registration_rate_limit == 4

    def test_signing_policy_defaults(self):
        settings = CoreSettings()

        assert settings.grace_period_ends == DEFAULT_GRACE_PERIOD_END
        assert settings.strict_mode is None

    def test_logging_defaults(self):
        settings = CoreSettings()

        assert settings.log_level == "INFO"
        assert settings.log_format == ""
        assert settings.log_file is None


# ============================================================================
# CoreSettings - Environment Overrides
# ============================================================================


class TestCoreSettingsEnvironment:
    """Test environment variable overrides."""

    def test_int_override(self, monkeypatch):
        monkeypatch.setenv("AIRC_FRESHNESS_WINDOW_SECONDS", "120")
        assert CoreSettings().freshness_window_seconds == 120

    def test_strict_mode_true(self, monkeypatch):
        monkeypatch.setenv("AIRC_STRICT_MODE", "true")
        assert CoreSettings().strict_mode is True

    def test_strict_mode_false(self, monkeypatch):
        monkeypatch.setenv("AIRC_STRICT_MODE", "false")
        assert CoreSettings().strict_mode is False

    def test_naive_grace_period_is_utc(self, monkeypatch):
        monkeypatch.setenv("AIRC_GRACE_PERIOD_ENDS", "2027-01-01T00:00:00")
        assert CoreSettings().grace_period_ends == datetime(2027, 1, 1, tzinfo=UTC)

    def test_backend_is_lowercased(self, monkeypatch):
        monkeypatch.setenv("AIRC_STORE_BACKEND", "POSTGRES")
        assert CoreSettings().store_backend == "postgres"

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("AIRC_STORE_BACKEND", "redis")
        with pytest.raises(ValidationError):
            CoreSettings()


# ============================================================================
# Computed properties
# ============================================================================


class TestComputedProperties:
    def test_nonce_retention_covers_window_and_skew(self):
        settings = CoreSettings(freshness_window_seconds=300, max_future_skew_seconds=120)
        assert settings.nonce_retention_seconds == 420

    def test_connection_params_carry_timeouts(self):
        settings = CoreSettings(store_timeout_seconds=3)
        params = settings.connection_params

        assert params["dbname"] == "airc"
        assert params["connect_timeout"] == 3
        assert params["options"] == "-c statement_timeout=3000"


# ============================================================================
# Singleton
# ============================================================================


class TestGetConfig:
    def test_returns_same_instance(self):
        assert get_config() is get_config()

    def test_clear_cache_rebuilds(self, monkeypatch):
        first = get_config()
        monkeypatch.setenv("AIRC_MESSAGE_RATE_LIMIT", "7")
        assert get_config().message_rate_limit == first.message_rate_limit

        clear_config_cache()
        assert get_config().message_rate_limit == 7
