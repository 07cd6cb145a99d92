"""HTTP client for the third-party provider's OAuth endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from tenant_oauth_broker.auth.broker_config import UpstreamConfig
from tenant_oauth_broker.errors import UpstreamTokenError

logger = logging.getLogger(__name__)

_DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class UpstreamTokens:
    access_token: str
    refresh_token: str
    expires_in: float
    refresh_token_expires_in: float | None = None

    def __repr__(self) -> str:
        return f"UpstreamTokens(expires_in={self.expires_in!r}, ...)"


class UpstreamOAuthClient:
    """Builds the authorization redirect and performs code/refresh exchanges."""

    def __init__(
        self,
        config: UpstreamConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _resolve_token_auth_method(self) -> str:
        method = (self.config.token_auth_method or "auto").strip().lower()
        if method == "auto":
            return "client_secret_basic" if self.config.client_secret else "none"
        if method in {"client_secret_basic", "client_secret_post", "none"}:
            return method
        raise RuntimeError(f"Unsupported upstream token auth method: {method}")

    def _apply_client_auth(self, payload: dict[str, str]) -> httpx.BasicAuth | None:
        method = self._resolve_token_auth_method()
        if method == "client_secret_basic" and self.config.client_secret:
            return httpx.BasicAuth(self.config.client_id, self.config.client_secret)
        payload["client_id"] = self.config.client_id
        if method == "client_secret_post" and self.config.client_secret:
            payload["client_secret"] = self.config.client_secret
        return None

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
        }
        return f"{self.config.authorization_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamTokens:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        return await self._token_request(payload, "code exchange")

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return await self._token_request(payload, "token refresh")

    async def _token_request(self, payload: dict[str, str], label: str) -> UpstreamTokens:
        auth = self._apply_client_auth(payload)
        try:
            response = await self._client().post(
                self.config.token_endpoint,
                data=payload,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("Upstream %s request failed: %s", label, exc)
            raise UpstreamTokenError(f"upstream {label} request failed") from exc

        if response.status_code != 200:
            try:
                body = response.json()
            except ValueError:
                body = None
            error_code = body.get("error") if isinstance(body, dict) else None
            logger.warning(
                "Upstream %s failed: status=%s error=%s",
                label,
                response.status_code,
                error_code,
            )
            raise UpstreamTokenError(
                f"upstream {label} failed",
                status_code=response.status_code,
                error=error_code if isinstance(error_code, str) else None,
            )

        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("Upstream %s returned non-JSON response", label)
            raise UpstreamTokenError(f"upstream {label} returned invalid JSON") from exc

        return _parse_tokens(data, label)


def _parse_tokens(data: Any, label: str) -> UpstreamTokens:
    if not isinstance(data, dict):
        raise UpstreamTokenError(f"upstream {label} returned an unexpected payload")
    access_token = data.get("access_token")
    refresh_token = data.get("refresh_token")
    if not isinstance(access_token, str) or not access_token:
        raise UpstreamTokenError(f"upstream {label} response is missing access_token")
    if not isinstance(refresh_token, str) or not refresh_token:
        raise UpstreamTokenError(f"upstream {label} response is missing refresh_token")

    try:
        expires_in = float(data.get("expires_in", _DEFAULT_EXPIRES_IN))
    except (TypeError, ValueError):
        expires_in = float(_DEFAULT_EXPIRES_IN)

    refresh_expires_raw = data.get("x_refresh_token_expires_in", data.get("refresh_expires_in"))
    refresh_token_expires_in: float | None
    try:
        refresh_token_expires_in = (
            float(refresh_expires_raw) if refresh_expires_raw is not None else None
        )
    except (TypeError, ValueError):
        refresh_token_expires_in = None

    return UpstreamTokens(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        refresh_token_expires_in=refresh_token_expires_in,
    )
