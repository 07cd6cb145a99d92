"""OAuth broker endpoints bridging an MCP client and the third-party provider."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from tenant_oauth_broker.auth.authenticator import RequestAuthenticator
from tenant_oauth_broker.auth.authorize import AuthorizationOrchestrator, parse_authorize_request
from tenant_oauth_broker.auth.broker_config import BrokerConfig
from tenant_oauth_broker.auth.callback import CallbackError, CallbackHandler, parse_callback_params
from tenant_oauth_broker.auth.pages import error_page, render_page
from tenant_oauth_broker.auth.token_exchange import TokenExchangeOrchestrator
from tenant_oauth_broker.errors import (
    LockTimeoutError,
    OAuthError,
    StorageUnavailableError,
    oauth_error_response,
)
from tenant_oauth_broker.locks import TenantLockCoordinator
from tenant_oauth_broker.services.token_refresh import TokenRefreshService
from tenant_oauth_broker.storage.base import KeyValueStore
from tenant_oauth_broker.storage.broker_tokens import BrokerTokenStore
from tenant_oauth_broker.storage.memory import MemoryStore
from tenant_oauth_broker.storage.sessions import CompanySessionStore
from tenant_oauth_broker.storage.short_lived import (
    AuthorizationCodeStore,
    ChallengeStore,
    StateBridgeStore,
)
from tenant_oauth_broker.upstream.client import UpstreamOAuthClient
from tenant_oauth_broker.utils.http import (
    check_redirect_uri,
    normalize_public_base_url,
    resolve_request_origin,
)
from tenant_oauth_broker.utils.time import Clock
from tenant_oauth_broker.utils.tokens import generate_client_id

_logger = logging.getLogger(__name__)

_CLIENT_TTL_SECONDS: int = 86400  # 24 hours
_MAX_REDIRECT_URI_LENGTH: int = 2048
_MAX_REGISTERED_CLIENTS: int = 10_000
_MAX_TENANT_ID_LENGTH: int = 128


@dataclass
class RegisteredClient:
    client_id: str
    client_secret: str | None
    redirect_uris: tuple[str, ...]
    client_name: str | None
    scope: str | None
    created_at: int


class OAuthBroker:
    """Owns the broker stores and exposes the OAuth endpoints as Starlette handlers."""

    def __init__(
        self,
        config: BrokerConfig,
        durable_store: KeyValueStore,
        *,
        upstream: UpstreamOAuthClient | None = None,
        trust_forwarded_headers: bool = False,
        public_base_url: str | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.config = config
        policy = config.policy
        self._trust_forwarded_headers = trust_forwarded_headers
        self._public_base_url = (
            normalize_public_base_url(public_base_url) if public_base_url else None
        )
        self._durable_store = durable_store
        self._clock = clock
        self._short_lived_store = MemoryStore()
        self.upstream = upstream or UpstreamOAuthClient(config.upstream)
        self.locks = TenantLockCoordinator(timeout_seconds=policy.lock_timeout_seconds)

        self.challenges = ChallengeStore(
            self._short_lived_store, ttl_seconds=policy.challenge_ttl_seconds, clock=clock
        )
        self.bridge = StateBridgeStore(
            self._short_lived_store, ttl_seconds=policy.state_ttl_seconds, clock=clock
        )
        self.codes = AuthorizationCodeStore(
            self._short_lived_store,
            ttl_seconds=policy.auth_code_ttl_seconds,
            clock=clock,
            used_retention_seconds=policy.used_code_retention_seconds,
        )
        self.sessions = CompanySessionStore(durable_store, clock=clock)
        self.broker_tokens = BrokerTokenStore(
            durable_store,
            ttl_seconds=policy.broker_token_ttl_seconds,
            refresh_ttl_seconds=policy.broker_refresh_token_ttl_seconds,
            clock=clock,
        )

        self.refresher = TokenRefreshService(
            self.sessions,
            self.locks,
            self.upstream,
            refresh_margin_seconds=policy.refresh_margin_seconds,
            clock=clock,
        )
        self.authorizer = AuthorizationOrchestrator(
            challenges=self.challenges,
            bridge=self.bridge,
            codes=self.codes,
            sessions=self.sessions,
            locks=self.locks,
            upstream=self.upstream,
            policy=policy,
            clock=clock,
        )
        self.callback_handler = CallbackHandler(
            challenges=self.challenges,
            bridge=self.bridge,
            codes=self.codes,
            sessions=self.sessions,
            locks=self.locks,
            upstream=self.upstream,
            policy=policy,
        )
        self.token_exchange = TokenExchangeOrchestrator(
            codes=self.codes,
            challenges=self.challenges,
            broker_tokens=self.broker_tokens,
            refresh_enabled=policy.broker_refresh_enabled,
        )
        self.authenticator = RequestAuthenticator(
            broker_tokens=self.broker_tokens,
            sessions=self.sessions,
            refresher=self.refresher,
            locks=self.locks,
            clock=clock,
        )
        self._clients: dict[str, RegisteredClient] = {}
        self._clients_lock = asyncio.Lock()

    def _origin(self, request: Request) -> str:
        return resolve_request_origin(
            request,
            trust_forwarded_headers=self._trust_forwarded_headers,
            public_base_url=self._public_base_url,
        )

    def callback_url(self, request: Request) -> str:
        if self.config.upstream.redirect_uri:
            return self.config.upstream.redirect_uri
        return f"{self._origin(request)}{self.config.upstream.callback_path}"

    async def sweep(self) -> dict[str, int]:
        """Drop expired short-lived records and broker tokens."""
        removed = {
            "challenges": await self.challenges.sweep(),
            "state_bridge": await self.bridge.sweep(),
            "codes": await self.codes.sweep(),
            "broker_tokens": await self.broker_tokens.sweep(),
        }
        if any(removed.values()):
            _logger.info("Expiry sweep removed %s", removed)
        _logger.debug("Authorization codes: %s", await self.codes.stats())
        _logger.debug("Company sessions: %s", await self.sessions.stats())
        return removed

    async def aclose(self) -> None:
        await self.upstream.aclose()
        await self._durable_store.close()
        await self._short_lived_store.close()

    def _cleanup_clients_unlocked(self, now: float) -> None:
        self._clients = {
            key: value
            for key, value in self._clients.items()
            if now - value.created_at <= _CLIENT_TTL_SECONDS
        }

    async def authorize(self, request: Request) -> Response:
        """Client-facing /authorize endpoint."""
        try:
            authorize_request = parse_authorize_request(
                request.query_params, self.config.policy.allowed_redirect_hosts
            )
        except OAuthError as exc:
            _logger.warning("Rejected authorization request: %s", exc.description)
            return error_page("Invalid Authorization Request", exc.description, error=exc.error)

        async with self._clients_lock:
            self._cleanup_clients_unlocked(self._clock())
            registration = self._clients.get(authorize_request.client_id)
        if registration and authorize_request.redirect_uri not in registration.redirect_uris:
            return error_page(
                "Invalid Authorization Request",
                "Invalid redirect_uri: not registered for this client",
                error="invalid_request",
            )

        try:
            outcome = await self.authorizer.authorize(
                authorize_request, self.callback_url(request)
            )
        except LockTimeoutError:
            return error_page(
                "Temporarily Unavailable",
                "Another authorization for this company is in progress.",
                error="temporarily_unavailable",
                status_code=503,
            )
        except StorageUnavailableError:
            _logger.exception("Storage unavailable during authorization")
            return error_page(
                "Server Error",
                "Failed to start authorization.",
                error="server_error",
                status_code=500,
            )
        return RedirectResponse(outcome.redirect_url, status_code=302)

    async def callback(self, request: Request) -> Response:
        """Third-party provider callback endpoint."""
        params = parse_callback_params(
            request.query_params, self.config.upstream.tenant_param
        )
        try:
            redirect_url = await self.callback_handler.handle(params, self.callback_url(request))
        except CallbackError as exc:
            return error_page(exc.title, exc.message, status_code=exc.status_code)
        except LockTimeoutError:
            return error_page(
                "Temporarily Unavailable",
                "Another authorization for this company is in progress.",
                error="temporarily_unavailable",
                status_code=503,
            )
        except StorageUnavailableError:
            _logger.exception("Storage unavailable during OAuth callback")
            return error_page(
                "Server Error",
                "Internal server error during OAuth callback.",
                error="server_error",
                status_code=500,
            )
        return RedirectResponse(redirect_url, status_code=302)

    @staticmethod
    async def _read_form(request: Request) -> dict[str, str]:
        content_type = request.headers.get("content-type", "").lower()
        raw_body = await request.body()
        if "application/json" in content_type:
            try:
                body = await request.json()
            except ValueError:
                raise OAuthError("invalid_request", "Request body is not valid JSON") from None
            if not isinstance(body, dict):
                raise OAuthError("invalid_request", "Request body must be an object")
            return {str(k): str(v) for k, v in body.items() if v is not None}

        form_values = parse_qs(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True)
        return {key: values[-1] for key, values in form_values.items() if values}

    async def token(self, request: Request) -> Response:
        """Client-facing /token endpoint."""
        try:
            form = await self._read_form(request)
            payload = await self.token_exchange.handle(form)
        except OAuthError as exc:
            return exc.to_response()
        except StorageUnavailableError:
            _logger.exception("Storage unavailable during token exchange")
            return oauth_error_response("server_error", "Storage temporarily unavailable", 500)
        return JSONResponse(payload, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    async def token_refresh(self, request: Request) -> Response:
        """Legacy /token/refresh endpoint; same as grant_type=refresh_token."""
        if not self.token_exchange.refresh_enabled:
            return oauth_error_response(
                "unsupported_grant_type", "Broker token refresh is disabled"
            )
        try:
            form = await self._read_form(request)
            payload = await self.token_exchange.refresh(form)
        except OAuthError as exc:
            return exc.to_response()
        except StorageUnavailableError:
            _logger.exception("Storage unavailable during token refresh")
            return oauth_error_response("server_error", "Storage temporarily unavailable", 500)
        return JSONResponse(payload, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    async def register(self, request: Request) -> Response:
        """Dynamic client registration endpoint (RFC 7591)."""
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return oauth_error_response("invalid_client_metadata", "Request body must be JSON")

        redirect_uris = body.get("redirect_uris") or []
        if not isinstance(redirect_uris, list) or not redirect_uris:
            return oauth_error_response("invalid_client_metadata", "redirect_uris is required")
        for uri in redirect_uris:
            if not isinstance(uri, str) or len(uri) > _MAX_REDIRECT_URI_LENGTH:
                return oauth_error_response("invalid_client_metadata", "redirect_uri is invalid")
            error = check_redirect_uri(uri, self.config.policy.allowed_redirect_hosts)
            if error:
                return oauth_error_response("invalid_redirect_uri", error)

        issued_at = int(self._clock())
        client_name = body.get("client_name")
        scope = body.get("scope")
        registration = RegisteredClient(
            client_id=generate_client_id(),
            client_secret=secrets.token_urlsafe(32),
            redirect_uris=tuple(redirect_uris),
            client_name=client_name if isinstance(client_name, str) else None,
            scope=scope if isinstance(scope, str) else None,
            created_at=issued_at,
        )
        async with self._clients_lock:
            self._cleanup_clients_unlocked(issued_at)
            if len(self._clients) >= _MAX_REGISTERED_CLIENTS:
                return oauth_error_response(
                    "temporarily_unavailable",
                    "too many registered clients",
                    503,
                )
            self._clients[registration.client_id] = registration
        _logger.info(
            "Registered client %s (%s)", registration.client_id, registration.client_name
        )

        grant_types = ["authorization_code"]
        if self.token_exchange.refresh_enabled:
            grant_types.append("refresh_token")
        response: dict[str, Any] = {
            "client_id": registration.client_id,
            "client_secret": registration.client_secret,
            "client_id_issued_at": issued_at,
            "client_secret_expires_at": 0,
            "redirect_uris": list(registration.redirect_uris),
            "token_endpoint_auth_method": "none",
            "grant_types": grant_types,
            "response_types": ["code"],
        }
        if registration.client_name:
            response["client_name"] = registration.client_name
        if registration.scope:
            response["scope"] = registration.scope
        return JSONResponse(response, status_code=201)

    async def oauth_authorization_server_metadata(self, request: Request) -> Response:
        """OAuth Authorization Server metadata endpoint (RFC 8414)."""
        origin = self._origin(request)
        grant_types = ["authorization_code"]
        if self.token_exchange.refresh_enabled:
            grant_types.append("refresh_token")
        metadata = {
            "issuer": origin,
            "authorization_endpoint": f"{origin}/authorize",
            "token_endpoint": f"{origin}/token",
            "registration_endpoint": f"{origin}/register",
            "scopes_supported": list(self.config.upstream.scopes),
            "response_types_supported": ["code"],
            "grant_types_supported": grant_types,
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": ["S256", "plain"],
        }
        return JSONResponse(metadata)

    async def disconnect(self, request: Request) -> Response:
        """Remove every session of a tenant (provider-initiated disconnect)."""
        qp = request.query_params
        tenant_id = (
            qp.get("tenantId") or qp.get(self.config.upstream.tenant_param) or ""
        ).strip()
        if not tenant_id or len(tenant_id) > _MAX_TENANT_ID_LENGTH:
            return error_page("Invalid Disconnect Request", "Missing or invalid tenant id.")

        try:
            removed = await self.disconnect_tenant(tenant_id)
        except LockTimeoutError:
            return error_page(
                "Temporarily Unavailable",
                "The connection is being refreshed. Please try again shortly.",
                error="temporarily_unavailable",
                status_code=503,
            )
        except StorageUnavailableError:
            _logger.exception("Storage unavailable during disconnect")
            return error_page(
                "Server Error",
                "Failed to disconnect.",
                error="server_error",
                status_code=500,
            )

        if removed:
            return render_page(
                "Disconnected",
                "Your connection has been removed.",
                "To reconnect, start the authorization flow again from your client.",
                success=True,
            )
        return render_page(
            "Already Disconnected",
            "No active connection was found for this company.",
            success=True,
        )

    async def disconnect_tenant(self, tenant_id: str) -> int:
        async with self.locks.hold(tenant_id):
            removed = await self.sessions.delete_tenant(tenant_id)
        _logger.info("Disconnected tenant %s (%d session(s) removed)", tenant_id, removed)
        return removed


def create_oauth_broker(
    config: BrokerConfig,
    durable_store: KeyValueStore,
    trust_forwarded_headers: bool = False,
    public_base_url: str | None = None,
) -> OAuthBroker:
    """Factory for the broker with its default upstream client."""
    return OAuthBroker(
        config,
        durable_store,
        trust_forwarded_headers=trust_forwarded_headers,
        public_base_url=public_base_url,
    )
