# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Core configuration - centralized config for the airc package.

All environment-based configuration should flow through this module.
This provides a single source of truth and consistent defaults.

Usage:
    from airc.core.config import get_config
    config = get_config()

    window = config.freshness_window_seconds
    policy_end = config.grace_period_ends
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Observed end of the unsigned-message grace period
DEFAULT_GRACE_PERIOD_END = datetime(2026, 2, 1, tzinfo=UTC)


class CoreSettings(BaseSettings):
    """Core configuration settings for the identity protocol.

    Settings can be configured via environment variables with the AIRC_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="AIRC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # STORE SETTINGS
    # ==========================================================================

    store_backend: str = Field(
        default="memory",
        description="Durable store backend: 'memory' (single process) or 'postgres'",
    )
    store_timeout_seconds: int = Field(
        default=5,
        description="Upper bound for a single store access before it is treated as unavailable",
    )

    db_host: str = Field(default="localhost", description="Database host")
    db_port: int = Field(default=5432, description="Database port")
    db_name: str = Field(default="airc", description="Database name")
    db_user: str = Field(default="airc", description="Database user")
    db_password: str = Field(default="", description="Database password")
    db_pool_min: int = Field(default=2, description="Minimum pool connections")
    db_pool_max: int = Field(default=20, description="Maximum pool connections")

    # ==========================================================================
    # FRESHNESS / REPLAY SETTINGS
    # ==========================================================================

    freshness_window_seconds: int = Field(
        default=300,
        description="Maximum age of a signed envelope (default: 5 minutes)",
    )
    max_future_skew_seconds: int = Field(
        default=300,
        description="Maximum amount a timestamp may lie in the future",
    )
    skew_warning_seconds: int = Field(
        default=60,
        description="Clock skew above which accepted envelopes carry a warning",
    )
    nonce_prune_interval_seconds: int = Field(
        default=300,
        description="Interval between opportunistic nonce ledger sweeps (0 disables)",
    )

    # ==========================================================================
    # SIGNING POLICY
    # ==========================================================================

    grace_period_ends: datetime | None = Field(
        default=DEFAULT_GRACE_PERIOD_END,
        description="End of the unsigned-message grace period (None = no grace period)",
    )
    strict_mode: bool | None = Field(
        default=None,
        description="Force strict (true) or permissive (false) signing; unset follows the grace period",
    )

    # ==========================================================================
    # RATE LIMITS
    # ==========================================================================

    rotation_cooldown_seconds: int = Field(default=3600, description="One key rotation per identity per window")
    revocation_cooldown_seconds: int = Field(default=86400, description="One revocation per identity per window")
    message_rate_limit: int = Field(default=100, description="Signed messages per sender per window")
    message_rate_window_seconds: int = Field(default=60, description="Message rate window")
    registration_rate_limit: int = Field(default=4, description="Registrations per client address per window")
    registration_rate_window_seconds: int = Field(default=3600, description="Registration rate window")

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
    )
    log_file: str | None = Field(default=None, description="Log file path (optional)")

    @field_validator("grace_period_ends")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("store_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "postgres"):
            raise ValueError(f"Unknown store backend: {value}")
        return value

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def nonce_retention_seconds(self) -> int:
        """How long a nonce must be remembered.

        Any envelope older than the freshness window is rejected regardless of
        ledger state, and one dated in the future may be presented until its
        timestamp falls out of the window, hence the sum.
        """
        return self.freshness_window_seconds + self.max_future_skew_seconds

    @property
    def connection_params(self) -> dict:
        """Get database connection parameters dict."""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": self.store_timeout_seconds,
            "options": f"-c statement_timeout={self.store_timeout_seconds * 1000}",
        }


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
