from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from recipeshare.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the recipe-sharing auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/recipeshare", "DATABASE_URL"
    )
    redis_url: str = env_field("", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    session_secret: str = env_field(
        None,
        "SESSION_SECRET",
        description="Key used to derive per-session CSRF tokens",
        validate_default=True,
    )
    session_cookie_name: str = env_field("sid", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_max_age_minutes: int = env_field(
        60,
        "SESSION_MAX_AGE_MINUTES",
        description="Absolute session lifetime regardless of activity",
    )
    afk_timeout_minutes: int = env_field(
        25,
        "AFK_TIMEOUT_MINUTES",
        description="Idle window after which an authenticated session is terminated",
    )
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_digits: int = env_field(6, "OTP_DIGITS")
    otp_max_attempts: int = env_field(
        5,
        "OTP_MAX_ATTEMPTS",
        description="Failed OTP verifications tolerated before a lockout",
    )
    otp_lockout_minutes: int = env_field(5, "OTP_LOCKOUT_MINUTES")
    expose_demo_otp: bool = env_field(
        False,
        "EXPOSE_DEMO_OTP",
        description="Echo issued OTP codes in API responses (demo deployments only)",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    rate_limit_api: int = env_field(100, "RATE_LIMIT_API")
    rate_limit_api_window_seconds: int = env_field(
        15 * 60, "RATE_LIMIT_API_WINDOW_SECONDS"
    )
    rate_limit_login: int = env_field(10, "RATE_LIMIT_LOGIN")
    rate_limit_login_window_seconds: int = env_field(
        60, "RATE_LIMIT_LOGIN_WINDOW_SECONDS"
    )
    rate_limit_otp: int = env_field(10, "RATE_LIMIT_OTP")
    rate_limit_otp_window_seconds: int = env_field(60, "RATE_LIMIT_OTP_WINDOW_SECONDS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "session_secret_generated",
            message="SESSION_SECRET not set; CSRF tokens will not survive a restart",
        )
        return secrets.token_urlsafe(48)

    @field_validator("otp_digits")
    @classmethod
    def _validate_otp_digits(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("OTP_DIGITS must be between 4 and 10")
        return value

    @model_validator(mode="after")
    def _validate_session_windows(self) -> "Settings":
        if self.afk_timeout_minutes <= 0:
            raise ValueError("AFK_TIMEOUT_MINUTES must be positive")
        if self.afk_timeout_minutes > self.session_max_age_minutes:
            raise ValueError(
                "AFK_TIMEOUT_MINUTES cannot exceed SESSION_MAX_AGE_MINUTES"
            )
        if self.otp_ttl_minutes <= 0:
            raise ValueError("OTP_TTL_MINUTES must be positive")
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
