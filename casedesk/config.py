from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from casedesk.logging import get_logger

logger = get_logger(__name__)


class SignupMode(str, Enum):
    """How a signup that passed OTP verification lands in the store.

    - APPROVAL: a pending account is created and an admin must verify it
    - DIRECT: a verified account is created immediately
    """

    APPROVAL = "approval"
    DIRECT = "direct"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the case-management identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/casedesk", "DATABASE_URL"
    )
    database_pool_size: int = env_field(10, "DATABASE_POOL_SIZE")
    redis_url: str = env_field(
        "",
        "REDIS_URL",
        description="Redis URL for shared rate limits; empty keeps limits in-process",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, seeded stores).",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("casedesk", "JWT_ISSUER")
    token_ttl_days: int = env_field(
        30, "TOKEN_TTL_DAYS", description="Lifetime of a freshly issued session token"
    )
    token_refresh_threshold_days: int = env_field(
        7,
        "TOKEN_REFRESH_THRESHOLD_DAYS",
        description="Reissue a token once its remaining lifetime drops below this",
    )

    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_digits: int = env_field(4, "OTP_DIGITS")
    otp_sweep_interval_seconds: int = env_field(
        300,
        "OTP_SWEEP_INTERVAL_SECONDS",
        description="Interval of the background expired-code sweep; 0 disables it",
    )
    signup_mode: SignupMode = env_field(SignupMode.APPROVAL, "SIGNUP_MODE")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    send_otp_rate_limit_per_minute: int = env_field(5, "SEND_OTP_RATE_LIMIT_PER_MINUTE")
    signin_rate_limit_per_minute: int = env_field(10, "SIGNIN_RATE_LIMIT_PER_MINUTE")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Case Desk", "EMAIL_FROM_NAME")

    service_api_key: str | None = env_field(
        None,
        "SERVICE_API_KEY",
        description="When set, every /v1 request must carry a matching X-API-Key header",
    )
    cron_secret: str | None = env_field(
        None, "CRON_SECRET", description="Bearer secret for maintenance endpoints"
    )
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
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

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("signup_mode")
    @classmethod
    def _validate_signup_mode(cls, value: SignupMode) -> SignupMode:
        return SignupMode(value)

    @field_validator("otp_digits")
    @classmethod
    def _validate_otp_digits(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("OTP_DIGITS must be between 4 and 10")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens are invalidated on restart",
        )
        return secrets.token_urlsafe(64)


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
