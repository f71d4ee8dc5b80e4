from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tripauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class RotationMode(str, Enum):
    """Refresh-token rotation policies selectable from configuration."""

    ALWAYS = "always"
    NEVER = "never"
    SAMPLED = "sampled"
    AGE = "age"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from env and `.env`."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets and the in-memory fallback used by the test suite.",
    )

    # Token signing
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("trip-planner", "JWT_ISSUER")
    jwt_audience: str = env_field("trip-planner-client", "JWT_AUDIENCE")
    access_token_expiry: str = env_field(
        "15m", "ACCESS_TOKEN_EXPIRY", description="Access token lifetime, e.g. 15m"
    )
    refresh_token_expiry: str = env_field(
        "7d", "REFRESH_TOKEN_EXPIRY", description="Refresh token lifetime, e.g. 7d"
    )
    remember_me_days: int = env_field(
        30, "REMEMBER_ME_DAYS", description="Refresh lifetime when the login asks to be remembered"
    )
    clock_skew_seconds: int = env_field(0, "CLOCK_SKEW_SECONDS")
    email_verification_expiry: str = env_field(
        "24h", "EMAIL_VERIFICATION_EXPIRY", description="Lifetime of email verification links"
    )
    password_reset_expiry: str = env_field(
        "1h", "PASSWORD_RESET_EXPIRY", description="Lifetime of password reset links"
    )

    # Sessions and rotation
    max_sessions_per_identity: int = env_field(10, "MAX_SESSIONS_PER_IDENTITY")
    login_history_limit: int = env_field(20, "LOGIN_HISTORY_LIMIT")
    rotation_policy: RotationMode = env_field(RotationMode.ALWAYS, "ROTATION_POLICY")
    rotation_sample_rate: float = env_field(0.1, "ROTATION_SAMPLE_RATE")
    rotation_max_age_minutes: int = env_field(24 * 60, "ROTATION_MAX_AGE_MINUTES")

    # Lockout and rate limits
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES")
    auth_rate_limit: int = env_field(
        10, "AUTH_RATE_LIMIT", description="Register/login attempts per client IP per window"
    )
    auth_rate_window_seconds: int = env_field(15 * 60, "AUTH_RATE_WINDOW_SECONDS")
    strict_rate_limit: int = env_field(
        5, "STRICT_RATE_LIMIT", description="Password changes, reset and verification emails per window"
    )
    strict_rate_window_seconds: int = env_field(15 * 60, "STRICT_RATE_WINDOW_SECONDS")

    # Notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Trip Planner", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # HTTP surface and client
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    client_request_timeout_seconds: float = env_field(
        10.0, "CLIENT_REQUEST_TIMEOUT_SECONDS"
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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"prod", "production"}:
                return Environment.PRODUCTION
            if lowered in {"", "dev", "development", "test", "local"}:
                return Environment.DEVELOPMENT
        return value

    @field_validator("rotation_policy", mode="before")
    @classmethod
    def _normalize_rotation(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("rotation_sample_rate")
    @classmethod
    def _validate_sample_rate(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("rotation_sample_rate must be between 0 and 1")
        return value

    @field_validator("client_request_timeout_seconds")
    @classmethod
    def _validate_client_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("client_request_timeout_seconds must be positive")
        return value

    @field_validator("redis_url", "jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def lockout_window_seconds(self) -> int:
        return self.lockout_window_minutes * 60


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
