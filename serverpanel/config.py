from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from jwt.algorithms import get_default_algorithms
from pydantic import BaseModel, ConfigDict, Field, field_validator

from serverpanel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the panel API."""

    # Token signing
    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_algorithm: str = env_field(
        "HS256",
        "TOKEN_ALGORITHM",
        description="JWS algorithm used to sign access tokens",
    )
    access_token_ttl_seconds: int = env_field(
        3600, "ACCESS_TOKEN_TTL_SECONDS", description="Access token lifetime"
    )
    refresh_token_ttl_seconds: int = env_field(
        2592000, "REFRESH_TOKEN_TTL_SECONDS", description="Refresh token lifetime"
    )
    # Sessions
    session_ttl_seconds: int = env_field(
        3600, "SESSION_TTL_SECONDS", description="Session cookie lifetime"
    )
    session_cookie_name: str = env_field("serverpanel_auth", "SESSION_COOKIE_NAME")
    # OTP
    otp_issuer: str = env_field("ServerPanel", "OTP_ISSUER")
    otp_encryption_key: str | None = env_field(
        None,
        "OTP_ENCRYPTION_KEY",
        description="Key material for encrypting OTP secrets at rest; defaults to TOKEN_SECRET",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ServerPanel", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")
    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

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

    @field_validator("token_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in get_default_algorithms():
            raise ValueError(f"unsupported token algorithm: {value}")
        return value

    @field_validator("token_secret", mode="before")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "token_secret_generated",
            message="TOKEN_SECRET not set; issued tokens are invalidated on restart",
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
