import asyncio
import dataclasses
from contextlib import closing
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from tenant_oauth_broker.auth.authenticator import AuthenticatedTenant
from tenant_oauth_broker.auth.context import get_tenant_context
from tenant_oauth_broker.errors import (
    LockTimeoutError,
    ReauthorizationRequired,
    StorageUnavailableError,
)
from tenant_oauth_broker.storage.memory import MemoryStore
from tenant_oauth_broker.storage.retry import RetryingStore
from tenant_oauth_broker.storage.sqlite import SqliteStore
from tenant_oauth_broker.transport.http_server import (
    BrokerAuthMiddleware,
    create_durable_store,
    create_http_app,
)


@pytest.fixture
def mock_settings():
    with patch("tenant_oauth_broker.transport.http_server.load_settings") as mock_load:
        settings = MagicMock()
        settings.broker.config_path = "/path/to/broker.yaml"
        settings.server.http_trust_forwarded_headers = False
        settings.server.public_base_url = None
        settings.storage.backend = "memory"
        settings.storage.max_retries = 3
        settings.storage.sweep_interval_seconds = 120.0
        mock_load.return_value = settings
        yield settings


def test_create_http_app_loads_configured_broker_file(mock_settings, broker_config):
    with patch(
        "tenant_oauth_broker.transport.http_server.load_broker_config",
        return_value=broker_config,
    ) as mock_load:
        app = create_http_app()

    mock_load.assert_called_once_with("/path/to/broker.yaml")
    assert isinstance(app, Starlette)
    routes = {r.path for r in app.routes}
    assert routes == {
        "/mcp",
        "/authorize",
        "/oauth/callback",
        "/token",
        "/token/refresh",
        "/register",
        "/disconnect",
        "/.well-known/oauth-authorization-server",
    }


def test_create_http_app_requires_config_path(mock_settings):
    mock_settings.broker.config_path = None
    with pytest.raises(RuntimeError, match="BROKER_CONFIG_PATH is required"):
        create_http_app()


def test_custom_callback_path_is_routed(mock_settings, config_factory):
    config = config_factory()
    config.upstream = dataclasses.replace(config.upstream, callback_path="/provider/return")
    app = create_http_app(config, durable_store=MemoryStore())
    assert "/provider/return" in {r.path for r in app.routes}


def test_create_durable_store_memory(mock_settings):
    store = create_durable_store(mock_settings)
    assert isinstance(store, RetryingStore)
    assert isinstance(store._inner, MemoryStore)


@pytest.mark.asyncio
async def test_create_durable_store_sqlite(mock_settings, tmp_path):
    mock_settings.storage.backend = "sqlite"
    mock_settings.storage.sqlite_path = str(tmp_path / "broker.sqlite")
    mock_settings.storage.sqlite_wal = False

    store = create_durable_store(mock_settings)
    try:
        assert isinstance(store._inner, SqliteStore)
    finally:
        await store.close()


def _gated_app(authenticator):
    async def endpoint(request):
        ctx = get_tenant_context()
        return JSONResponse({"tenant_id": ctx.tenant_id, "state": request.state.tenant_id})

    async def open_endpoint(request):
        return JSONResponse({"ok": True})

    app = Starlette(
        routes=[
            Route("/mcp", endpoint=endpoint, methods=["POST", "OPTIONS"]),
            Route("/token", endpoint=open_endpoint, methods=["POST"]),
        ]
    )
    return BrokerAuthMiddleware(app, authenticator=authenticator)


def _tenant():
    return AuthenticatedTenant(
        tenant_id="realm-1",
        session_id="session-1",
        access_token="provider-access",
        broker_token_expires_at=1_700_003_600.0,
    )


def test_broker_auth_middleware_sets_tenant_context():
    authenticator = MagicMock()
    authenticator.authenticate = AsyncMock(return_value=_tenant())

    with closing(TestClient(_gated_app(authenticator))) as client:
        response = client.post("/mcp", headers={"Authorization": "Bearer mcp_token"})

    assert response.status_code == 200
    assert response.json() == {"tenant_id": "realm-1", "state": "realm-1"}
    authenticator.authenticate.assert_awaited_once_with("mcp_token")


def test_broker_auth_middleware_skips_unprotected_paths():
    authenticator = MagicMock()
    authenticator.authenticate = AsyncMock(side_effect=AssertionError("not called"))

    with closing(TestClient(_gated_app(authenticator))) as client:
        assert client.post("/token").status_code == 200
    authenticator.authenticate.assert_not_awaited()


def test_broker_auth_middleware_reauthorization_required():
    authenticator = MagicMock()
    authenticator.authenticate = AsyncMock(
        side_effect=ReauthorizationRequired("Company connection was removed")
    )

    with closing(TestClient(_gated_app(authenticator))) as client:
        response = client.post("/mcp", headers={"Authorization": "Bearer mcp_token"})

    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == -32003
    assert body["error"]["message"] == "Company connection was removed"
    assert response.headers["www-authenticate"] == (
        'Bearer realm="mcp", error="reauthorization_required"'
    )


@pytest.mark.parametrize(
    "error",
    [LockTimeoutError("realm-1", 30.0), StorageUnavailableError("db locked")],
)
def test_broker_auth_middleware_transient_failures(error):
    authenticator = MagicMock()
    authenticator.authenticate = AsyncMock(side_effect=error)

    with closing(TestClient(_gated_app(authenticator))) as client:
        response = client.post("/mcp", headers={"Authorization": "Bearer mcp_token"})

    assert response.status_code == 503
    assert response.json()["error"]["data"]["error"] == "temporarily_unavailable"


def test_lifespan_runs_sweeper(mock_settings, broker_config):
    app = create_http_app(
        broker_config, durable_store=MemoryStore(), sweep_interval_seconds=0.01
    )
    broker = app.state.broker
    calls = []

    async def fake_sweep():
        calls.append(1)
        return {}

    broker.sweep = fake_sweep
    broker.aclose = AsyncMock()

    with TestClient(app) as client:
        client.portal.call(asyncio.sleep, 0.05)

    assert calls
    broker.aclose.assert_awaited_once()
