from __future__ import annotations

import os
import re
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from adminauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ACCESS_TOKEN_SECONDS = 900

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration_seconds(value: Any, default: int = DEFAULT_ACCESS_TOKEN_SECONDS) -> int:
    """Parse ``"30s"``, ``"15m"``, ``"1h"``, ``"1d"`` or bare seconds.

    Unparseable or non-positive values fall back to ``default``.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if not isinstance(value, str):
        return default
    match = _DURATION_RE.match(value)
    if not match:
        logger.warning("duration_parse_failed", value=value, default=default)
        return default
    amount = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    return amount if amount > 0 else default


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token and session lifecycle service."""

    issuer_url: str = env_field("http://localhost:3001", "ISSUER_URL")
    app_base_url: str = env_field("http://localhost:3001", "APP_BASE_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/adminauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/adminauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets and sync Redis.",
    )
    # Signing keys: inline PEM wins over the key files
    jwt_private_key_path: str = env_field("keys/private-key.pem", "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str = env_field("keys/public-key.pem", "JWT_PUBLIC_KEY_PATH")
    jwt_private_key_pem: str | None = env_field(None, "JWT_PRIVATE_KEY_PEM")
    jwt_public_key_pem: str | None = env_field(None, "JWT_PUBLIC_KEY_PEM")
    access_token_expires_in: str = env_field(
        "15m",
        "ACCESS_TOKEN_EXPIRES_IN",
        description="Access token lifetime, e.g. 900, 30s, 15m, 1h, 1d",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    auth_code_ttl_seconds: int = env_field(600, "AUTH_CODE_EXPIRES_IN")
    id_token_ttl_seconds: int = env_field(3600, "ID_TOKEN_TTL_SECONDS")
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES")
    setup_token_ttl_hours: int = env_field(24, "SETUP_TOKEN_TTL_HOURS")
    access_cookie_name: str = env_field("accessToken", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("strict", "COOKIE_SAMESITE")
    default_role: str = env_field("operator", "DEFAULT_ROLE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Admin Service", "EMAIL_FROM_NAME")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "strict").lower()
        if normalized not in {"strict", "lax", "none"}:
            raise ValueError("cookie_samesite must be strict, lax, or none")
        return normalized

    @field_validator("issuer_url", "app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration_seconds(self.access_token_expires_in)

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
