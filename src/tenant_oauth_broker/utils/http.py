"""Shared HTTP utilities."""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlencode, urlparse, urlsplit, urlunsplit

from starlette.requests import Request

_PUBLIC_BASE_URL_ALLOWED_SCHEMES = frozenset({"http", "https"})
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


def first_forwarded_value(value: str | None) -> str | None:
    """Extract the first value from a comma-separated forwarded header.

    Used with X-Forwarded-For, X-Forwarded-Host, X-Forwarded-Proto, etc.
    """
    if not value:
        return None
    first = value.split(",", 1)[0].strip()
    return first or None


def normalize_public_base_url(value: str) -> str:
    """Normalize and validate externally visible base URL for metadata and callbacks."""
    candidate = value.strip()
    if not candidate:
        raise ValueError("public_base_url must not be empty")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in _PUBLIC_BASE_URL_ALLOWED_SCHEMES:
        raise ValueError("public_base_url must use http or https")
    if not parsed.netloc:
        raise ValueError("public_base_url must include host")
    if parsed.query or parsed.fragment:
        raise ValueError("public_base_url must not include query or fragment")
    if parsed.username or parsed.password:
        raise ValueError("public_base_url must not include userinfo")

    normalized_path = parsed.path.rstrip("/")
    if normalized_path == "/":
        normalized_path = ""
    return f"{parsed.scheme.lower()}://{parsed.netloc}{normalized_path}"


def resolve_request_origin(
    request: Request,
    *,
    trust_forwarded_headers: bool = False,
    public_base_url: str | None = None,
) -> str:
    """Resolve canonical origin for externally visible URLs."""
    if public_base_url:
        return normalize_public_base_url(public_base_url)

    forwarded_proto = None
    forwarded_host = None
    if trust_forwarded_headers:
        forwarded_proto = first_forwarded_value(request.headers.get("x-forwarded-proto"))
        forwarded_host = first_forwarded_value(request.headers.get("x-forwarded-host"))

    scheme = forwarded_proto or request.url.scheme
    host = forwarded_host or request.headers.get("host") or request.url.netloc
    return f"{scheme}://{host}"


def normalize_hostname(hostname: str | None) -> str | None:
    if hostname is None:
        return None
    normalized = hostname.strip().lower().rstrip(".")
    if normalized.startswith("[") and normalized.endswith("]"):
        normalized = normalized[1:-1]
    return normalized or None


def is_loopback_host(hostname: str | None) -> bool:
    return normalize_hostname(hostname) in _LOOPBACK_HOSTS


def check_redirect_uri(uri: str, allowed_hosts: Iterable[str]) -> str | None:
    """Validate a redirect URI against a hostname allow-list.

    The hostname is compared exactly after URL parsing. Returns an error
    message, or None when the URI is acceptable.
    """
    try:
        parsed = urlparse(uri)
        hostname = normalize_hostname(parsed.hostname)
    except ValueError:
        return f"Invalid redirect_uri: {uri}"
    if not parsed.scheme or not parsed.netloc or hostname is None:
        return f"Malformed redirect_uri: {uri}"
    if parsed.username or parsed.password:
        return "redirect_uri must not include userinfo"
    if parsed.fragment:
        return "redirect_uri must not include a fragment"

    allowed = {normalize_hostname(host) for host in allowed_hosts}
    if hostname not in allowed:
        return f"redirect_uri host is not allowed: {hostname}"
    if parsed.scheme.lower() != "https" and not is_loopback_host(hostname):
        return f"redirect_uri must use https (got {parsed.scheme})"
    return None


def append_query(url: str, params: dict[str, str]) -> str:
    """Append query parameters to a URL, preserving any it already carries."""
    parts = urlsplit(url)
    extra = urlencode(params)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
