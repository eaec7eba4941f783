from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service and its stores."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep sessions and revocations in process memory instead of Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    app_env: str = env_field("development", "APP_ENV")
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Signing keys; both are required and must differ
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token and session record lifetime in minutes",
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Identity bridge (core service that owns users and credentials)
    identity_service_url: str = env_field("http://localhost:8000", "IDENTITY_SERVICE_URL")
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_frontend_callback_url: str = env_field(
        "http://localhost:3000/auth/callback", "OAUTH_FRONTEND_CALLBACK_URL"
    )
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")
    oauth_link_ttl_seconds: int = env_field(
        300,
        "OAUTH_LINK_TTL_SECONDS",
        description="Lifetime of the account-selection handle after an OAuth callback",
    )

    # Password reset
    password_reset_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TTL_SECONDS")
    password_reset_url: str = env_field(
        "http://localhost:3000/auth/reset-password",
        "PASSWORD_RESET_URL",
        description="Frontend page that receives the reset token as a query parameter",
    )

    auth_route_prefix: str = env_field("/auth", "AUTH_ROUTE_PREFIX")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _require_secret(cls, value: Any, info) -> str:
        if not value:
            env_name = info.field_name.upper()
            logger.error("jwt_secret_missing", setting=env_name)
            raise ValueError(f"{env_name} environment variable is required")
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"{info.field_name.upper()} must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self):
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            logger.warning(
                "refresh_ttl_not_longer_than_access_ttl",
                access_ttl_minutes=self.access_token_ttl_minutes,
                refresh_ttl_minutes=self.refresh_token_ttl_minutes,
            )
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
