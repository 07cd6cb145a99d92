"""Broker configuration loader (upstream provider, flow policy, security limits)."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

_VALID_TOKEN_AUTH_METHODS = frozenset(
    {"auto", "client_secret_basic", "client_secret_post", "none"}
)


@dataclass(frozen=True)
class UpstreamConfig:
    """Third-party OAuth provider that owns the tenant data."""

    authorization_endpoint: str
    token_endpoint: str
    client_id: str
    client_secret: str | None = None
    token_auth_method: str = "auto"
    scopes: tuple[str, ...] = ()
    callback_path: str = "/oauth/callback"
    redirect_uri: str | None = None
    tenant_param: str = "realmId"
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class PolicyConfig:
    """Flow policy: TTLs, margins and redirect allow-list."""

    allowed_redirect_hosts: tuple[str, ...] = ("claude.ai", "localhost", "127.0.0.1")
    challenge_ttl_seconds: int = 600
    state_ttl_seconds: int = 600
    auth_code_ttl_seconds: int = 600
    used_code_retention_seconds: int = 300
    broker_token_ttl_seconds: int = 3600
    broker_refresh_enabled: bool = False
    broker_refresh_token_ttl_seconds: int = 7 * 24 * 3600
    refresh_margin_seconds: int = 300
    shared_session_margin_seconds: int = 1800
    shared_tenant_id: str | None = None
    reuse_single_tenant: bool = True
    lock_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SecurityConfig:
    """Security middleware configuration."""

    rate_limit_per_ip: int = 100  # requests per window
    oauth_rate_limit_per_ip: int = 10  # requests per window on OAuth endpoints
    rate_limit_window_seconds: float = 900.0  # 15 minutes
    max_body_size_bytes: int = 1024 * 1024  # 1MB
    max_header_size_bytes: int = 8 * 1024  # 8KB
    request_timeout_seconds: float = 30.0


@dataclass
class BrokerConfig:
    """Complete broker configuration."""

    upstream: UpstreamConfig
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)


def _substitute_env_vars(value: str) -> str:
    """Substitute ${VAR} and $VAR patterns with environment variables."""

    def replace(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replace, value)


_MAX_ENV_VAR_DEPTH = 20


def _process_env_vars(obj: Any, _depth: int = 0) -> Any:
    """Recursively substitute environment variables in strings."""
    if _depth > _MAX_ENV_VAR_DEPTH:
        return obj
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_env_vars(v, _depth + 1) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_env_vars(item, _depth + 1) for item in obj]
    return obj


def _project_root() -> Path:
    """Resolve project root by locating pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return current.parents[3]


def _normalize_str_list(raw: Any, field_name: str) -> tuple[str, ...]:
    if isinstance(raw, str):
        raw = [part for part in re.split(r"[,\s]+", raw) if part]
    if not isinstance(raw, list):
        raise ValueError(f"{field_name} must be a list of strings")

    normalized: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValueError(f"{field_name} must contain only strings")
        value = item.strip()
        if not value:
            raise ValueError(f"{field_name} contains an empty entry")
        normalized.append(value)
    return tuple(normalized)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_upstream_config(data: dict[str, Any]) -> UpstreamConfig:
    upstream_data = data.get("upstream") or {}
    if not isinstance(upstream_data, dict):
        raise ValueError("upstream must be a mapping")

    authorization_endpoint = _optional_str(upstream_data.get("authorization_endpoint"))
    token_endpoint = _optional_str(upstream_data.get("token_endpoint"))
    client_id = _optional_str(upstream_data.get("client_id"))
    if not authorization_endpoint:
        raise ValueError("upstream.authorization_endpoint is required")
    if not token_endpoint:
        raise ValueError("upstream.token_endpoint is required")
    if not client_id:
        raise ValueError("upstream.client_id is required")

    token_auth_method = (
        _optional_str(upstream_data.get("token_auth_method")) or "auto"
    ).lower()
    if token_auth_method not in _VALID_TOKEN_AUTH_METHODS:
        raise ValueError(
            "upstream.token_auth_method must be one of "
            "'auto', 'client_secret_basic', 'client_secret_post', 'none'"
        )
    client_secret = _optional_str(upstream_data.get("client_secret"))
    if token_auth_method in {"client_secret_basic", "client_secret_post"} and not client_secret:
        raise ValueError(
            "upstream.client_secret is required when "
            f"upstream.token_auth_method={token_auth_method}"
        )

    callback_path = str(upstream_data.get("callback_path", "/oauth/callback")).strip()
    if not callback_path.startswith("/"):
        raise ValueError("upstream.callback_path must start with '/'")

    timeout_seconds = float(upstream_data.get("timeout_seconds", 15.0))
    if timeout_seconds <= 0:
        raise ValueError("upstream.timeout_seconds must be positive")

    return UpstreamConfig(
        authorization_endpoint=authorization_endpoint,
        token_endpoint=token_endpoint,
        client_id=client_id,
        client_secret=client_secret,
        token_auth_method=token_auth_method,
        scopes=_normalize_str_list(upstream_data.get("scopes", []), "upstream.scopes"),
        callback_path=callback_path,
        redirect_uri=_optional_str(upstream_data.get("redirect_uri")),
        tenant_param=_optional_str(upstream_data.get("tenant_param")) or "realmId",
        timeout_seconds=timeout_seconds,
    )


def _parse_policy_config(data: dict[str, Any]) -> PolicyConfig:
    policy_data = data.get("policy") or {}
    defaults = PolicyConfig()

    allowed_hosts = _normalize_str_list(
        policy_data.get("allowed_redirect_hosts", list(defaults.allowed_redirect_hosts)),
        "policy.allowed_redirect_hosts",
    )
    policy = PolicyConfig(
        allowed_redirect_hosts=tuple(host.lower() for host in allowed_hosts),
        challenge_ttl_seconds=int(
            policy_data.get("challenge_ttl_seconds", defaults.challenge_ttl_seconds)
        ),
        state_ttl_seconds=int(policy_data.get("state_ttl_seconds", defaults.state_ttl_seconds)),
        auth_code_ttl_seconds=int(
            policy_data.get("auth_code_ttl_seconds", defaults.auth_code_ttl_seconds)
        ),
        used_code_retention_seconds=int(
            policy_data.get("used_code_retention_seconds", defaults.used_code_retention_seconds)
        ),
        broker_token_ttl_seconds=int(
            policy_data.get("broker_token_ttl_seconds", defaults.broker_token_ttl_seconds)
        ),
        broker_refresh_enabled=_parse_bool(
            policy_data.get("broker_refresh_enabled"), defaults.broker_refresh_enabled
        ),
        broker_refresh_token_ttl_seconds=int(
            policy_data.get(
                "broker_refresh_token_ttl_seconds", defaults.broker_refresh_token_ttl_seconds
            )
        ),
        refresh_margin_seconds=int(
            policy_data.get("refresh_margin_seconds", defaults.refresh_margin_seconds)
        ),
        shared_session_margin_seconds=int(
            policy_data.get(
                "shared_session_margin_seconds", defaults.shared_session_margin_seconds
            )
        ),
        shared_tenant_id=_optional_str(policy_data.get("shared_tenant_id")),
        reuse_single_tenant=_parse_bool(
            policy_data.get("reuse_single_tenant"), defaults.reuse_single_tenant
        ),
        lock_timeout_seconds=float(
            policy_data.get("lock_timeout_seconds", defaults.lock_timeout_seconds)
        ),
    )

    for name in (
        "challenge_ttl_seconds",
        "state_ttl_seconds",
        "auth_code_ttl_seconds",
        "broker_token_ttl_seconds",
        "broker_refresh_token_ttl_seconds",
    ):
        if getattr(policy, name) <= 0:
            raise ValueError(f"policy.{name} must be positive")
    if policy.refresh_margin_seconds < 0 or policy.shared_session_margin_seconds < 0:
        raise ValueError("policy margins must not be negative")
    if policy.lock_timeout_seconds <= 0:
        raise ValueError("policy.lock_timeout_seconds must be positive")
    return policy


def _parse_security_config(data: dict[str, Any]) -> SecurityConfig:
    sec_data = data.get("security") or {}
    return SecurityConfig(
        rate_limit_per_ip=int(sec_data.get("rate_limit_per_ip", 100)),
        oauth_rate_limit_per_ip=int(sec_data.get("oauth_rate_limit_per_ip", 10)),
        rate_limit_window_seconds=float(sec_data.get("rate_limit_window_seconds", 900.0)),
        max_body_size_bytes=int(sec_data.get("max_body_size_kb", 1024)) * 1024,
        max_header_size_bytes=int(sec_data.get("max_header_size_kb", 8)) * 1024,
        request_timeout_seconds=float(sec_data.get("request_timeout_seconds", 30.0)),
    )


def parse_broker_config(data: dict[str, Any]) -> BrokerConfig:
    """Build a BrokerConfig from an already-loaded mapping."""
    if not isinstance(data, dict):
        raise ValueError("Broker config must be a mapping")
    return BrokerConfig(
        upstream=_parse_upstream_config(data),
        policy=_parse_policy_config(data),
        security=_parse_security_config(data),
    )


def load_broker_config(config_path: str | Path) -> BrokerConfig:
    """Load broker configuration from YAML file."""
    load_dotenv(dotenv_path=_project_root() / ".env")
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Broker config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw_data = yaml.safe_load(f) or {}

    return parse_broker_config(_process_env_vars(raw_data))
