from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SameSitePolicy(str, Enum):
    """Cookie SameSite attribute values accepted by browsers."""

    STRICT = "strict"
    LAX = "lax"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings, built once at process start."""

    pepper: str = env_field(
        None,
        "AUTH_PEPPER",
        description="Server-wide secret appended to passwords before hashing",
        validate_default=True,
    )
    ip_hash_secret: str | None = env_field(
        None,
        "AUTH_IP_HASH_SECRET",
        description="Key for client IP fingerprints; falls back to the pepper",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")

    # Cookies
    session_cookie_name: str = env_field("sid", "SESSION_COOKIE_NAME")
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_same_site: SameSitePolicy = env_field(SameSitePolicy.LAX, "COOKIE_SAME_SITE")
    session_ttl_days: float = env_field(7, "SESSION_TTL_DAYS")
    csrf_cookie_max_age_seconds: int = env_field(
        60 * 60 * 24 * 30, "CSRF_COOKIE_MAX_AGE_SECONDS"
    )

    # Password hashing
    argon2_memory_cost: int = env_field(19456, "ARGON2_MEMORY")
    argon2_time_cost: int = env_field(2, "ARGON2_ITERATIONS")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    rate_limit_atomic: bool = env_field(
        False,
        "RATE_LIMIT_ATOMIC",
        description="Run prune/count/insert as one server-side script",
    )
    audit_timeout_seconds: float = env_field(2.0, "AUDIT_TIMEOUT_SECONDS")

    # Email verification
    disable_email_verification: bool = env_field(False, "DISABLE_EMAIL_VERIFICATION")
    auto_send_verification_on_register: bool = env_field(
        True, "AUTO_SEND_VERIFICATION_ON_REGISTER"
    )
    session_before_verification: bool = env_field(False, "SESSION_BEFORE_VERIFICATION")
    email_verification_ttl_minutes: int = env_field(60, "EMAIL_VERIFICATION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")

    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("pepper", mode="before")
    @classmethod
    def _require_pepper(cls, value: Any) -> Any:
        # A generated pepper would invalidate every stored hash on restart
        if not value or len(value) < 16:
            raise ValueError("AUTH_PEPPER must be set to at least 16 characters")
        return value

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _normalize_same_site(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value

    @field_validator("session_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("session_ttl_days must be positive")
        return value

    @model_validator(mode="after")
    def _check_cookie_policy(self) -> "Settings":
        if self.cookie_same_site is SameSitePolicy.NONE and not self.cookie_secure:
            raise ValueError("SameSite=None cookies must also be secure")
        return self

    @property
    def session_ttl_seconds(self) -> int:
        return max(1, int(self.session_ttl_days * 86400))

    @property
    def fingerprint_secret(self) -> str:
        return self.ip_hash_secret or self.pepper


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
