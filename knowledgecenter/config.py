from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from knowledgecenter.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

MAX_PASSWORD_HASH_WORKERS = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the identity and RBAC service."""

    app_env: str = env_field(
        "local",
        "APP_ENV",
        description="Deployment environment; anything but 'local' marks cookies Secure",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/api/auth", "REFRESH_COOKIE_PATH")
    database_url: str = env_field(
        "postgresql://localhost:5432/knowledgecenter", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional JSON snapshot file for the in-memory identity store",
    )
    public_group_roles: list[str] = env_field(
        ["user"],
        "PUBLIC_GROUP_ROLES",
        description="Roles granted to the seeded 'public' group by the memory store",
    )
    password_hash_workers: int = env_field(
        4,
        "PASSWORD_HASH_WORKERS",
        description="Size of the thread pool running Argon2id hashing",
    )
    cors_allow_origins: list[str] = env_field(
        list(_DEFAULT_CORS_ORIGINS), "CORS_ALLOW_ORIGINS"
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
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
    def is_local(self) -> bool:
        return self.app_env == "local"

    @property
    def secure_cookies(self) -> bool:
        return not self.is_local

    @field_validator("app_env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "local").strip().lower()

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or not value.strip():
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be configured")
        return value

    @field_validator("public_group_roles", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("password_hash_workers")
    @classmethod
    def _clamp_workers(cls, value: int) -> int:
        return min(max(1, value), MAX_PASSWORD_HASH_WORKERS)

    @field_validator("refresh_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
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
