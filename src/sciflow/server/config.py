# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Server configuration using pydantic-settings."""

from __future__ import annotations

import logging
import secrets
from importlib.metadata import PackageNotFoundError, version

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from sciflow.core.config import CoreSettings

logger = logging.getLogger(__name__)


def get_package_version() -> str:
    """Installed package version, or a dev marker when running from source."""
    try:
        return version("sciflow")
    except PackageNotFoundError:
        return "0.0.0-dev"


class ServerSettings(CoreSettings):
    """Configuration for the SciFlow HTTP API.

    Inherits the settlement, rail, storage and logging settings and adds
    HTTP, auth and rate-limit settings. Environment variables use the
    SCIFLOW_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCIFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Server settings
    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=8430, description="Port to bind to")
    external_url: str | None = Field(default=None, description="Public base URL, if behind a proxy")

    # Bearer JWT authentication
    jwt_secret: str | None = Field(
        default=None,
        description="HS256 secret for API tokens (REQUIRED in production - set SCIFLOW_JWT_SECRET)",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_issuer: str = Field(default="sciflow", description="Expected 'iss' claim")
    jwt_expiry_seconds: int = Field(default=3600, description="Lifetime of issued tokens")

    # CORS settings
    allowed_origins: list[str] = Field(
        default=[],
        description="Allowed CORS origins. Empty = same-origin only. Set to ['*'] for development.",
    )

    # Rate limiting (requests per minute per client)
    rate_limit_rpm: int = Field(default=120, description="Requests per minute per client (0 disables)")
    rate_limit_backend: str = Field(default="memory", description="Counter store: 'memory' or 'redis'")

    # Error detail in 500 responses
    debug: bool = Field(default=False, description="Include exception details in internal errors")

    server_version: str = Field(default_factory=get_package_version, description="Server version")

    production: bool = Field(default=False, description="Force production mode (stricter security requirements)")

    @model_validator(mode="after")
    def validate_production_settings(self) -> ServerSettings:
        """Require real secrets whenever the server is reachable from outside."""
        is_production = (
            self.external_url is not None
            or self.host not in ("localhost", "127.0.0.1", "0.0.0.0")  # nosec B104
            or self.production
        )

        if is_production:
            if not self.jwt_secret or len(self.jwt_secret) < 32:
                raise ValueError(
                    "SCIFLOW_JWT_SECRET of at least 32 characters is required in production mode. "
                    "Generate one with: python -c 'import secrets; print(secrets.token_hex(32))'"
                )
            if "card" in self.enabled_rail_names and not self.stripe_webhook_secret:
                raise ValueError("STRIPE_WEBHOOK_SECRET is required in production when the card rail is enabled")

        if not self.jwt_secret:
            logger.warning("Auto-generating JWT secret - tokens will not persist across restarts")
            object.__setattr__(self, "jwt_secret", secrets.token_hex(32))

        return self

    @property
    def base_url(self) -> str:
        if self.external_url:
            return self.external_url.rstrip("/")
        return f"http://{self.host}:{self.port}"


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
