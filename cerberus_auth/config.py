from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cerberus_auth.logging import get_logger

logger = get_logger(__name__)


class CredentialStoreKind(str, Enum):
    """Credential store backends selectable via CREDENTIAL_STORE."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session manager and its identity service."""

    api_base_url: str = env_field("http://localhost:8000", "CERBERUS_API_BASE_URL")
    api_prefix: str = env_field("/api/v1", "CERBERUS_API_PREFIX")
    # Identity service endpoints, relative to api_prefix
    login_path: str = env_field("/auth/login", "CERBERUS_LOGIN_PATH")
    refresh_path: str = env_field("/auth/refresh", "CERBERUS_REFRESH_PATH")
    logout_path: str = env_field("/auth/logout", "CERBERUS_LOGOUT_PATH")
    logout_all_path: str = env_field("/auth/logout-all", "CERBERUS_LOGOUT_ALL_PATH")
    me_path: str = env_field("/auth/me", "CERBERUS_ME_PATH")
    change_password_path: str = env_field(
        "/auth/change-password", "CERBERUS_CHANGE_PASSWORD_PATH"
    )
    # Health probe is served outside the API prefix
    health_path: str = env_field("/health", "CERBERUS_HEALTH_PATH")
    request_timeout_seconds: float = env_field(
        10.0,
        "CERBERUS_REQUEST_TIMEOUT",
        description="Transport timeout for identity service calls; expiry is reported as a network error",
    )
    access_token_ttl_minutes: int = env_field(
        30,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime issued by the identity service",
    )
    refresh_interval_seconds: float | None = env_field(
        None,
        "TOKEN_REFRESH_INTERVAL_SECONDS",
        description="Scheduled refresh cadence; defaults to 5/6 of the access token lifetime",
    )
    credential_store: CredentialStoreKind = env_field(
        CredentialStoreKind.MEMORY, "CREDENTIAL_STORE"
    )
    credential_store_path: str = env_field(
        str(Path("~/.cerberus/credentials.json")), "CREDENTIAL_STORE_PATH"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    storage_key_prefix: str = env_field("", "STORAGE_KEY_PREFIX")
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")

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

    @field_validator("api_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("api_base_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value

    @field_validator("credential_store")
    @classmethod
    def _validate_store(cls, value: CredentialStoreKind) -> CredentialStoreKind:
        return CredentialStoreKind(value)

    @field_validator(
        "request_timeout_seconds", "access_token_ttl_minutes", "min_password_length"
    )
    @classmethod
    def _ensure_positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("refresh_interval_seconds", mode="before")
    @classmethod
    def _validate_interval(cls, value):
        if value in (None, ""):
            return None
        if float(value) <= 0:
            raise ValueError("refresh interval must be positive")
        return value

    @property
    def effective_refresh_interval(self) -> float:
        """Seconds between scheduled refreshes, shorter than the token lifetime."""
        if self.refresh_interval_seconds is not None:
            return float(self.refresh_interval_seconds)
        return self.access_token_ttl_minutes * 60 * 5 / 6

    def api_url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            api_base_url=_settings_cache.api_base_url,
            credential_store=_settings_cache.credential_store.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
