from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from happyjourney.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class RateLimitBackend(str, Enum):
    """Where fixed-window counters live."""

    MEMORY = "memory"
    REDIS = "redis"


# Minimum signing secret length accepted by the token signer
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the contest platform API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Token signing. Left unset on purpose when not configured: identity
    # resolution fails closed instead of inventing a secret.
    auth_secret: str | None = env_field(None, "AUTH_SECRET")

    database_url: str = env_field(
        "postgresql://localhost:5432/happyjourney", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")

    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY,
        "RATE_LIMIT_BACKEND",
        description="memory is correct for a single instance only; use redis when scaled out",
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    csp_media_origins: List[str] = env_field(
        [
            "https://cloudinary.com",
            "https://api.cloudinary.com",
            "https://res.cloudinary.com",
        ],
        "CSP_MEDIA_ORIGINS",
    )
    csp_payment_origins: List[str] = env_field(
        ["https://checkout.razorpay.com", "https://api.razorpay.com"],
        "CSP_PAYMENT_ORIGINS",
    )

    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )

    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Happiness Journey", "EMAIL_FROM_NAME")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or Environment.DEVELOPMENT
        return value

    @field_validator("auth_secret")
    @classmethod
    def _check_auth_secret(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            logger.warning("auth_secret_missing")
            return None
        if len(value) < MIN_SECRET_LENGTH:
            # Kept as-is so the signer can refuse it at use time
            logger.warning("auth_secret_too_short", min_length=MIN_SECRET_LENGTH)
        return value

    @field_validator(
        "cors_allow_origins", "csp_media_origins", "csp_payment_origins", mode="before"
    )
    @classmethod
    def _parse_origin_list(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("rate_limit_window_seconds")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=value,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            return 60
        return value


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
