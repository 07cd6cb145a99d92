"""Starlette HTTP server assembly for the OAuth broker and its protected endpoint."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from tenant_oauth_broker.auth.authenticator import RequestAuthenticator, extract_bearer_token
from tenant_oauth_broker.auth.broker_config import BrokerConfig, load_broker_config
from tenant_oauth_broker.auth.context import (
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)
from tenant_oauth_broker.auth.oauth_broker import OAuthBroker
from tenant_oauth_broker.config import Settings, load_settings
from tenant_oauth_broker.errors import (
    AuthenticationError,
    LockTimeoutError,
    StorageUnavailableError,
)
from tenant_oauth_broker.middleware.security import OAUTH_PATHS, PreAuthSecurityMiddleware
from tenant_oauth_broker.storage.base import KeyValueStore
from tenant_oauth_broker.storage.memory import MemoryStore
from tenant_oauth_broker.storage.retry import RetryingStore
from tenant_oauth_broker.storage.sqlite import SqliteStore
from tenant_oauth_broker.transport.mcp_handler import auth_error_response, handle_mcp_request
from tenant_oauth_broker.upstream.client import UpstreamOAuthClient
from tenant_oauth_broker.utils.time import Clock

logger = logging.getLogger(__name__)

PROTECTED_PATHS = frozenset({"/mcp"})


def create_durable_store(settings: Settings) -> KeyValueStore:
    """Session and broker-token storage selected by STORAGE_BACKEND."""
    storage = settings.storage
    inner: KeyValueStore
    if storage.backend == "sqlite":
        logger.info("Using SQLite storage at %s", storage.sqlite_path)
        inner = SqliteStore(storage.sqlite_path, wal=storage.sqlite_wal)
    else:
        logger.warning("Using in-memory storage; sessions are lost on restart")
        inner = MemoryStore()
    return RetryingStore(inner, max_retries=storage.max_retries)


def create_http_app(
    broker_config: BrokerConfig | None = None,
    *,
    durable_store: KeyValueStore | None = None,
    upstream: UpstreamOAuthClient | None = None,
    clock: Clock = time.time,
    sweep_interval_seconds: float | None = None,
) -> Starlette:
    """Create the broker HTTP application."""
    settings = load_settings()

    if broker_config is None:
        config_path = settings.broker.config_path
        if not config_path:
            raise RuntimeError(
                "BROKER_CONFIG_PATH is required. Set it to the path of broker.yaml"
            )
        logger.info("Loading broker config from: %s", config_path)
        broker_config = load_broker_config(config_path)

    trust_forwarded_headers = settings.server.http_trust_forwarded_headers
    broker = OAuthBroker(
        broker_config,
        durable_store if durable_store is not None else create_durable_store(settings),
        upstream=upstream,
        trust_forwarded_headers=trust_forwarded_headers,
        public_base_url=settings.server.public_base_url,
        clock=clock,
    )
    callback_path = broker_config.upstream.callback_path
    interval = sweep_interval_seconds or settings.storage.sweep_interval_seconds

    # Order: PreAuthSecurity -> BrokerAuth
    # The security middleware runs first so rate and size limits apply to
    # unauthenticated traffic too.
    middleware = [
        Middleware(
            PreAuthSecurityMiddleware,
            config=broker_config.security,
            trust_forwarded_headers=trust_forwarded_headers,
            oauth_paths=OAUTH_PATHS | {callback_path},
        ),
        Middleware(
            BrokerAuthMiddleware,
            authenticator=broker.authenticator,
        ),
    ]

    routes = [
        Route("/mcp", endpoint=handle_mcp_request, methods=["POST", "OPTIONS"]),
        Route("/authorize", endpoint=broker.authorize, methods=["GET"]),
        Route(callback_path, endpoint=broker.callback, methods=["GET"]),
        Route("/token", endpoint=broker.token, methods=["POST"]),
        Route("/token/refresh", endpoint=broker.token_refresh, methods=["POST"]),
        Route("/register", endpoint=broker.register, methods=["POST"]),
        Route("/disconnect", endpoint=broker.disconnect, methods=["GET", "POST"]),
        Route(
            "/.well-known/oauth-authorization-server",
            endpoint=broker.oauth_authorization_server_metadata,
            methods=["GET"],
        ),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting OAuth broker HTTP server...")
        sweeper = asyncio.create_task(_sweep_periodically(broker, interval))
        try:
            yield
        finally:
            logger.info("Stopping OAuth broker HTTP server...")
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await broker.aclose()

    app = Starlette(
        routes=routes,
        middleware=middleware,
        lifespan=lifespan,
    )
    app.state.broker = broker
    return app


async def _sweep_periodically(broker: OAuthBroker, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await broker.sweep()
        except StorageUnavailableError:
            logger.warning("Expiry sweep skipped: storage unavailable")


class BrokerAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer gate for the protected endpoint.

    Resolves the broker token to the tenant's current third-party access
    token and exposes it to handlers through the tenant context.
    """

    def __init__(
        self,
        app: Any,
        authenticator: RequestAuthenticator,
        protected_paths: frozenset[str] = PROTECTED_PATHS,
    ) -> None:
        super().__init__(app)
        self.authenticator = authenticator
        self.protected_paths = protected_paths

    @staticmethod
    def _build_authenticate_header(error: str) -> str:
        return f'Bearer realm="mcp", error="{error}"'

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if request.url.path not in self.protected_paths or request.method == "OPTIONS":
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization"))
        try:
            tenant = await self.authenticator.authenticate(token)
        except AuthenticationError as exc:
            logger.info("Rejected %s request: %s (%s)", request.url.path, exc, exc.error)
            return auth_error_response(
                request,
                jsonrpc_code=exc.jsonrpc_code,
                error=exc.error,
                message=str(exc),
                status_code=exc.status_code,
                www_authenticate=self._build_authenticate_header(exc.error),
            )
        except (LockTimeoutError, StorageUnavailableError) as exc:
            logger.warning("Authentication temporarily unavailable: %s", exc)
            return auth_error_response(
                request,
                jsonrpc_code=-32000,
                error="temporarily_unavailable",
                message="Authentication temporarily unavailable",
                status_code=503,
            )

        context = TenantContext(
            tenant_id=tenant.tenant_id,
            session_id=tenant.session_id,
            access_token=tenant.access_token,
            broker_token_expires_at=tenant.broker_token_expires_at,
        )
        ctx_token = set_tenant_context(context)
        try:
            request.state.tenant_id = tenant.tenant_id
            return await call_next(request)
        finally:
            reset_tenant_context(ctx_token)
