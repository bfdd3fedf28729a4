from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clientportal.logging import get_logger

logger = get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when settings are missing or invalid; the service must not start."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/clientportal", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    session_ttl_hours: float = env_field(
        8, "SESSION_TTL_HOURS", description="Sliding session lifetime in hours"
    )
    session_cookie_name: str = env_field(
        "portal_session",
        "SESSION_COOKIE_NAME",
        description="HTTP-only cookie carrying the session token",
    )
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", description="Consecutive failures before lockout"
    )
    lockout_minutes: int = env_field(
        30, "LOCKOUT_MINUTES", description="Lockout duration in minutes"
    )
    login_rate_limit: int = env_field(
        5, "LOGIN_RATE_LIMIT", description="Login attempts allowed per window and identifier"
    )
    login_rate_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_WINDOW_SECONDS", description="Login rate limit window"
    )
    admin_identities: List[str] = env_field(
        [],
        "ADMIN_IDENTITIES",
        description="Comma separated administrator e-mail allow-list",
    )
    metrics_cache_ttl_seconds: int = env_field(
        300, "METRICS_CACHE_TTL_SECONDS", description="Dashboard metrics cache TTL"
    )
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline for each counter store and account lookup call",
    )
    compute_timeout_seconds: float = env_field(
        10.0,
        "COMPUTE_TIMEOUT_SECONDS",
        description="Deadline for recomputing dashboard metrics",
    )

    log_level: str = env_field("INFO", "LOG_LEVEL", description="Minimum log level")
    log_json: bool = env_field(True, "LOG_JSON", description="Render log entries as JSON")
    log_dev_mode: bool = env_field(
        False, "LOG_DEV_MODE", description="Colored console output for local development"
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
        try:
            return cls(**merged)
        except ValidationError as exc:
            logger.error("settings_invalid", errors=exc.errors(include_url=False))
            raise ConfigurationError(str(exc)) from exc

    @field_validator("admin_identities", mode="before")
    @classmethod
    def _split_admin_identities(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return sorted({str(item).strip().lower() for item in value if str(item).strip()})

    @field_validator(
        "session_ttl_hours",
        "lockout_threshold",
        "lockout_minutes",
        "login_rate_window_seconds",
        "metrics_cache_ttl_seconds",
        "store_timeout_seconds",
        "compute_timeout_seconds",
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("login_rate_limit")
    @classmethod
    def _validate_rate_limit(cls, value: int) -> int:
        # zero disables limiting, negative values are a typo
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = str(value).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("unknown log level")
        return level

    @field_validator("session_cookie_name")
    @classmethod
    def _validate_cookie_name(cls, value: str) -> str:
        name = value.strip()
        if not name or not any(tag in name.lower() for tag in ("session", "auth")):
            raise ValueError("cookie name must contain 'session' or 'auth'")
        return name

    @property
    def session_ttl_seconds(self) -> int:
        return int(self.session_ttl_hours * 3600)

    def validate_startup(self) -> None:
        """Cross-field checks that must pass before the runtime is built."""

        if not self.use_memory_store and not self.database_url:
            raise ConfigurationError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
        redis_optional = self.test_mode or self.allow_redis_fallback_dev
        if not self.redis_url and not redis_optional:
            raise ConfigurationError(
                "REDIS_URL is required; set TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true "
                "for an in-process counter store"
            )


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
