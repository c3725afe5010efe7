from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nosqlgate.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Backing stores the gateway can front."""

    MEMORY = "memory"
    KEYVALUE = "keyvalue"
    DOCUMENT = "document"
    WIDECOLUMN = "widecolumn"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gateway and its backend adapter."""

    backend: StoreBackend = env_field(
        StoreBackend.MEMORY,
        "STORE_BACKEND",
        description="Which backend adapter serves record requests",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_namespace: str = env_field("nosqlgate", "REDIS_NAMESPACE")
    couchdb_url: str = env_field("http://localhost:5984", "COUCHDB_URL")
    couchdb_user: str | None = env_field(None, "COUCHDB_USER")
    couchdb_password: str | None = env_field(None, "COUCHDB_PASSWORD")
    database_url: str = env_field(
        "postgresql://localhost:5432/nosqlgate", "DATABASE_URL"
    )
    schema_path: str | None = env_field(
        None,
        "SCHEMA_PATH",
        description="JSON file describing per-table fields, ids and server filters",
    )
    lookups: dict[str, str] = env_field(
        {},
        "LOOKUPS",
        description="JSON object of {{name}} lookup values available to filters",
    )
    max_records_returned: int = env_field(1000, "MAX_RECORDS_RETURNED")
    request_timeout_seconds: float = env_field(10.0, "REQUEST_TIMEOUT_SECONDS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> StoreBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return StoreBackend(value)

    @field_validator("lookups", mode="before")
    @classmethod
    def _parse_lookups(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"LOOKUPS must be a JSON object: {exc.msg}") from exc
            if not isinstance(parsed, dict):
                raise ValueError("LOOKUPS must be a JSON object")
            return {str(k): str(v) for k, v in parsed.items()}
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("max_records_returned")
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_RECORDS_RETURNED must be positive")
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
