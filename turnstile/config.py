from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from turnstile.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class RateLimitRule(BaseModel):
    """Attempt budget for one sensitive entry point."""

    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class Settings(BaseModel):
    """Runtime settings for the session core."""

    jwt_access_secret: str = env_field(
        None,
        "JWT_ACCESS_SECRET",
        validate_default=True,
        description="HMAC secret for access tokens",
    )
    jwt_refresh_secret: str = env_field(
        None,
        "JWT_REFRESH_SECRET",
        validate_default=True,
        description="HMAC secret for refresh tokens",
    )
    jwt_reset_secret: str = env_field(
        None,
        "JWT_RESET_SECRET",
        validate_default=True,
        description="HMAC secret for password reset tokens",
    )
    jwt_issuer: str = env_field("turnstile", "JWT_ISSUER")
    jwt_audience: str = env_field("turnstile-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    reset_token_ttl_seconds: int = env_field(15 * 60, "RESET_TOKEN_TTL_SECONDS", gt=0)
    refresh_grace_seconds: int = env_field(
        120,
        "REFRESH_GRACE_SECONDS",
        ge=0,
        description="How long the previous refresh token is accepted after a rotation",
    )
    otp_ttl_seconds: int = env_field(10 * 60, "OTP_TTL_SECONDS", gt=0)
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        ge=0,
        description="Leeway applied to token expiry checks",
    )
    collaborator_timeout_seconds: float = env_field(
        5.0,
        "COLLABORATOR_TIMEOUT_SECONDS",
        gt=0,
        description="Timeout for directory lookups and code delivery",
    )

    login_rate_limit: RateLimitRule = env_field(
        RateLimitRule(limit=5, window_seconds=15 * 60), "LOGIN_RATE_LIMIT"
    )
    otp_resend_rate_limit: RateLimitRule = env_field(
        RateLimitRule(limit=3, window_seconds=10 * 60), "OTP_RESEND_RATE_LIMIT"
    )
    otp_verify_rate_limit: RateLimitRule = env_field(
        RateLimitRule(limit=10, window_seconds=15 * 60), "OTP_VERIFY_RATE_LIMIT"
    )
    password_reset_rate_limit: RateLimitRule = env_field(
        RateLimitRule(limit=3, window_seconds=60 * 60), "PASSWORD_RESET_RATE_LIMIT"
    )
    register_rate_limit: RateLimitRule = env_field(
        RateLimitRule(limit=10, window_seconds=60 * 60), "REGISTER_RATE_LIMIT"
    )
    rate_limit_sweep_seconds: int = env_field(300, "RATE_LIMIT_SWEEP_SECONDS", gt=0)
    token_cleanup_seconds: int = env_field(300, "TOKEN_CLEANUP_SECONDS", gt=0)

    redis_url: str | None = env_field(None, "REDIS_URL")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Turnstile", "EMAIL_FROM_NAME")

    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    expose_codes_in_responses: bool = env_field(
        False,
        "EXPOSE_CODES_IN_RESPONSES",
        description="Echo issued codes in responses; development only",
    )
    dev_mode: bool = env_field(False, "DEV_MODE")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator(
        "login_rate_limit",
        "otp_resend_rate_limit",
        "otp_verify_rate_limit",
        "password_reset_rate_limit",
        "register_rate_limit",
        mode="before",
    )
    @classmethod
    def _parse_rate_rule(cls, value: Any) -> Any:
        # Env form is "<limit>/<window_seconds>", e.g. "5/900"
        if isinstance(value, str):
            try:
                limit, window = value.split("/", 1)
                return {"limit": int(limit), "window_seconds": int(window)}
            except ValueError as exc:
                raise ValueError(
                    f"rate limit must look like '<limit>/<window_seconds>', got {value!r}"
                ) from exc
        return value

    @field_validator(
        "jwt_access_secret", "jwt_refresh_secret", "jwt_reset_secret", mode="before"
    )
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError(f"{info.field_name} must be at least 32 characters")
            return value
        logger.warning(
            "jwt_secret_generated",
            field=info.field_name,
            message="No secret configured; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        distinct = {self.jwt_access_secret, self.jwt_refresh_secret, self.jwt_reset_secret}
        if len(distinct) != 3:
            raise ValueError("access, refresh and reset secrets must all differ")
        if self.expose_codes_in_responses and not (self.test_mode or self.dev_mode):
            raise ValueError("EXPOSE_CODES_IN_RESPONSES requires TEST_MODE or DEV_MODE")
        return self


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
