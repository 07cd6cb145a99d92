"""Configuration management for the tenant OAuth broker."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from tenant_oauth_broker.utils.http import normalize_public_base_url

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(BaseModel):
    """Durable storage settings.

    Only the session and broker-token collections go through the configured
    backend. Challenges, bridge entries and authorization codes live in
    process memory because their lifetime is bounded by a short TTL.
    """

    backend: Literal["sqlite", "memory"] = Field(default="sqlite")
    sqlite_path: str = Field(default="./data/broker.sqlite")
    sqlite_wal: bool = Field(default=True)
    max_retries: int = Field(default=3, ge=0, le=10)
    sweep_interval_seconds: float = Field(default=120.0, gt=0)


class BrokerSettings(BaseModel):
    config_path: str | None = Field(
        default=None,
        description="Path to broker.yaml holding upstream endpoints and policy",
    )


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1024, le=65535)
    http_trust_forwarded_headers: bool = Field(default=False)
    public_base_url: str | None = Field(
        default=None,
        description=(
            "Externally visible base URL used for OAuth metadata and the third-party "
            "callback (e.g. https://broker.example.com)."
        ),
    )

    @field_validator("public_base_url")
    @classmethod
    def _validate_public_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_public_base_url(value)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)


ENV_KEYS = {
    "host": "BROKER_HOST",
    "port": "BROKER_PORT",
    "public_base_url": "BROKER_PUBLIC_BASE_URL",
    "config_path": "BROKER_CONFIG_PATH",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "storage_backend": "STORAGE_BACKEND",
    "sqlite_path": "SQLITE_PATH",
    "sqlite_wal": "SQLITE_WAL",
    "max_retries": "STORAGE_MAX_RETRIES",
    "sweep_interval": "SWEEP_INTERVAL_SECONDS",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    config_path_env = os.getenv(ENV_KEYS["config_path"])

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "http_trust_forwarded_headers": _env_bool(
                "HTTP_TRUST_FORWARDED_HEADERS",
                ServerSettings().http_trust_forwarded_headers,
            ),
            "public_base_url": (
                os.getenv(ENV_KEYS["public_base_url"], "").strip() or None
            ),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "backend": os.getenv(ENV_KEYS["storage_backend"], StorageSettings().backend)
            .strip()
            .lower(),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool(ENV_KEYS["sqlite_wal"], StorageSettings().sqlite_wal),
            "max_retries": _env_int(ENV_KEYS["max_retries"], StorageSettings().max_retries),
            "sweep_interval_seconds": _env_float(
                ENV_KEYS["sweep_interval"],
                StorageSettings().sweep_interval_seconds,
            ),
        },
        "broker": {
            "config_path": _resolve_path(config_path_env) if config_path_env else None,
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.storage.backend == "sqlite":
        Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
