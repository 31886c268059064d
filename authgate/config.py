from __future__ import annotations

import os
import secrets
from functools import lru_cache
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; enables runtime resets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1, description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        15, "REFRESH_TOKEN_TTL_DAYS", ge=1, description="Refresh session lifetime"
    )
    login_rate_limit: int = env_field(
        5, "LOGIN_RATE_LIMIT", ge=1, description="Login attempts per window per client"
    )
    login_rate_window_seconds: int = env_field(
        60, "LOGIN_RATE_WINDOW_SECONDS", ge=1
    )
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        gt=0,
        description="Default deadline for a single auth operation's storage calls",
    )
    storage_pool_size: int = env_field(10, "STORAGE_POOL_SIZE", ge=1)
    revoke_session_on_replay: bool = env_field(
        False,
        "REVOKE_SESSION_ON_REPLAY",
        description="Delete a session when a rotated-out refresh token is presented again",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str | None = env_field(None, "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @staticmethod
    def _env_name(name: str, field: Any) -> str:
        extra = field.json_schema_extra
        if isinstance(extra, dict) and extra.get("env"):
            return extra["env"]
        return name.upper()

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment layered over ``env_file``."""
        layered = {**dotenv_values(env_file), **os.environ}
        values = {}
        for name, field in cls.model_fields.items():
            env_name = cls._env_name(name, field)
            if layered.get(env_name) is not None:
                values[name] = layered[env_name]
        return cls(**values)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # ephemeral secret; tokens do not survive a restart
        logger.warning("jwt_secret_generated", reason="JWT_SECRET unset in test mode")
        self.jwt_secret = secrets.token_urlsafe(48)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def reset_settings_cache() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
