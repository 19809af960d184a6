# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Server configuration using pydantic-settings."""

from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError, version

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from airc.core.config import CoreSettings

logger = logging.getLogger(__name__)


def get_package_version() -> str:
    """Get the package version from installed metadata.

    Returns the version from pyproject.toml when installed,
    or a dev fallback when running from source without install.
    """
    try:
        return version("airc-identity")
    except PackageNotFoundError:
        return "0.0.0-dev"


class ServerSettings(CoreSettings):
    """Configuration for the airc HTTP server.

    Inherits core settings (store, freshness, signing policy, rate limits,
    logging) and adds HTTP settings.

    Settings can be configured via environment variables with AIRC_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="AIRC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=8430, description="Port to bind to")

    # CORS settings
    allowed_origins: list[str] = Field(
        default=[],
        description="Allowed CORS origins. Empty = same-origin only. Set to ['*'] for development.",
    )

    server_name: str = Field(default="airc", description="Server name reported by /api/v1/health")
    server_version: str = Field(default_factory=get_package_version, description="Server version")

    # Production mode flag (explicit override)
    production: bool = Field(
        default=False,
        description="Force production mode (stricter requirements)",
    )

    @model_validator(mode="after")
    def validate_production_settings(self) -> ServerSettings:
        """Validate store settings for production environments.

        In production (when host is not a loopback/wildcard address, or the
        production flag is set) the in-memory store is refused: every worker
        would keep its own nonce ledger and replays could slip between them.
        """
        is_production = self.host not in ("localhost", "127.0.0.1", "0.0.0.0") or self.production  # nosec B104

        if is_production and self.store_backend != "postgres":
            raise ValueError(
                "AIRC_STORE_BACKEND=postgres is required in production mode. "
                "The in-memory store is only safe for a single process."
            )

        if self.strict_mode is False:
            logger.warning("AIRC_STRICT_MODE=false - unsigned messages will be accepted")

        return self


# Global settings instance - lazy loaded
_settings: ServerSettings | None = None


def get_settings() -> ServerSettings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = ServerSettings()
    return _settings


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    global _settings
    _settings = None
