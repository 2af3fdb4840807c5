from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authsvc.logging import get_logger

logger = get_logger(__name__)

# Upper bound on verification leeway for access tokens
MAX_TOKEN_LEEWAY_SECONDS = 30
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    # Access token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authsvc", "JWT_ISSUER")
    jwt_audience: str = env_field("authsvc-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    token_leeway_seconds: int = env_field(
        5,
        "TOKEN_LEEWAY_SECONDS",
        ge=0,
        le=MAX_TOKEN_LEEWAY_SECONDS,
        description="Clock skew tolerated when checking access token expiry",
    )
    refresh_reuse_revokes_all: bool = env_field(
        False,
        "REFRESH_REUSE_REVOKES_ALL",
        description="Revoke every session of a user when a rotated refresh token is replayed",
    )
    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES", ge=1)
    # One-time tokens
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    password_reset_max_requests: int = env_field(3, "PASSWORD_RESET_MAX_REQUESTS", ge=1)
    password_reset_window_minutes: int = env_field(60, "PASSWORD_RESET_WINDOW_MINUTES", ge=1)
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    # OAuth
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES", ge=1)
    oauth_state_sweep_seconds: int = env_field(60, "OAUTH_STATE_SWEEP_SECONDS", ge=1)
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    # Password hashing
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    # Storage and side channels
    database_url: str = env_field(
        "postgresql://localhost:5432/authsvc", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    events_channel: str = env_field("user-events", "EVENTS_CHANNEL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Expose one-time tokens in responses and accept pre-registered OAuth codes",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "oauth_redirect_uri")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH and not self.test_mode:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET unset; generated an ephemeral signing key for TEST_MODE",
        )
        self.jwt_secret = secrets.token_urlsafe(48)
        return self


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
