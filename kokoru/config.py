from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kokoru.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments; production tightens secrets and error text."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/kokoru", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: in-memory cache allowed, no timing jitter.",
    )

    # Token signing. Access and refresh tokens use separate secrets.
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_access_expiry: str = env_field("15m", "JWT_ACCESS_EXPIRY")
    jwt_refresh_expiry: str = env_field("7d", "JWT_REFRESH_EXPIRY")
    jwt_issuer: str = env_field("kokoru", "JWT_ISSUER")
    jwt_audience: str = env_field("kokoru-garden", "JWT_AUDIENCE")
    enforce_token_blacklist: bool = env_field(
        True,
        "ENFORCE_TOKEN_BLACKLIST",
        description="Reject revoked access tokens; when false, hits are only logged.",
    )

    # Google sign-in
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(
        None,
        "GOOGLE_REDIRECT_URI",
        description="Must match the redirect URI the client used to obtain the code.",
    )
    google_http_timeout_seconds: float = env_field(10.0, "GOOGLE_HTTP_TIMEOUT_SECONDS")
    google_state_ttl_seconds: int = env_field(600, "GOOGLE_STATE_TTL_SECONDS")

    # Password hashing and policy
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_special: bool = env_field(False, "PASSWORD_REQUIRE_SPECIAL")

    # Abuse limits
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_window_seconds: int = env_field(15 * 60, "LOGIN_WINDOW_SECONDS")
    email_resend_delay_seconds: int = env_field(60, "EMAIL_RESEND_DELAY_SECONDS")

    # One-time token lifetimes
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")

    # Identity store
    store_timeout_seconds: float = env_field(3.0, "STORE_TIMEOUT_SECONDS")
    security_delay_min_ms: int = env_field(50, "SECURITY_DELAY_MIN_MS")
    security_delay_max_ms: int = env_field(150, "SECURITY_DELAY_MAX_MS")
    bulk_update_limit: int = env_field(100, "BULK_UPDATE_LIMIT")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Kokoru Garden", "EMAIL_FROM_NAME")
    email_queue_size: int = env_field(
        1000,
        "EMAIL_QUEUE_SIZE",
        description="Pending notification jobs held before new ones are dropped.",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("security_delay_max_ms")
    @classmethod
    def _validate_delay(cls, value: int, info) -> int:
        low = info.data.get("security_delay_min_ms", 0)
        if value < low:
            raise ValueError("security_delay_max_ms must be >= security_delay_min_ms")
        return value

    @field_validator("bulk_update_limit")
    @classmethod
    def _validate_bulk_limit(cls, value: int) -> int:
        if value < 1 or value > 100:
            raise ValueError("bulk_update_limit must be between 1 and 100")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if value:
                if self.is_production and len(value) < _MIN_SECRET_LENGTH:
                    raise ValueError(f"{name} must be at least {_MIN_SECRET_LENGTH} characters")
                continue
            if self.is_production:
                raise ValueError(f"{name} must be set in production")
            # Ephemeral secrets invalidate every token on restart
            logger.warning("jwt_secret_generated", setting=name)
            object.__setattr__(self, name, secrets.token_urlsafe(48))
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("jwt_access_secret and jwt_refresh_secret must differ")
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
