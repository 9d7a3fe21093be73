from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskboard.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}
_MIN_JWT_SECRET_LENGTH = 32


def parse_duration(raw: str) -> timedelta:
    """Parse a compact duration such as ``30d``, ``12h``, ``15m`` or ``90s``.

    Only a positive integer followed by a single unit is accepted; anything
    else raises ``ValueError``.
    """
    if not isinstance(raw, str):
        raise ValueError("duration must be a string like '30d'")
    match = _DURATION_PATTERN.match(raw.strip())
    if not match:
        raise ValueError(
            f"invalid duration {raw!r}: expected <integer><unit> with unit in s, m, h, d"
        )
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"invalid duration {raw!r}: must be greater than zero")
    return timedelta(**{_DURATION_UNITS[match.group(2)]: amount})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _default_origins() -> list[str]:
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


class Settings(BaseModel):
    """Process-wide settings, read once at startup and frozen afterwards."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskboard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only conveniences such as runtime resets and a generated JWT secret.",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    db_statement_timeout_ms: int = env_field(
        5000,
        "DB_STATEMENT_TIMEOUT_MS",
        ge=0,
        description="Postgres statement_timeout applied to every pooled connection (0 disables)",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("taskboard", "JWT_ISSUER")
    jwt_audience: str = env_field("taskboard-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        description="Access token lifetime in minutes",
    )
    refresh_token_expires_in: timedelta = env_field(
        timedelta(days=30),
        "REFRESH_TOKEN_EXPIRES_IN",
        description="Refresh token lifetime as <integer><unit>, e.g. 30d",
    )
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)
    cors_allow_origins: list[str] = Field(
        default_factory=_default_origins,
        json_schema_extra={"env": "CORS_ALLOW_ORIGINS"},
    )

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

    @field_validator("refresh_token_expires_in", mode="before")
    @classmethod
    def _parse_refresh_ttl(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("refresh_token_expires_in")
    @classmethod
    def _ensure_positive_ttl(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("refresh token lifetime must be positive")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set")
        # Frozen model: bypass the setter for the test-only generated key
        object.__setattr__(self, "jwt_secret", secrets.token_urlsafe(64))
        logger.warning("jwt_secret_generated_for_test_mode")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)


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
