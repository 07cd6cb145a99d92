from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import os
import secrets
from urllib.parse import parse_qs

import httpx
import pytest

from tenant_oauth_broker.auth.broker_config import BrokerConfig, parse_broker_config
from tenant_oauth_broker.upstream.client import UpstreamOAuthClient

PROVIDER_AUTHORIZE_URL = "https://provider.example.com/oauth2/authorize"
PROVIDER_TOKEN_URL = "https://provider.example.com/oauth2/token"
CLIENT_REDIRECT_URI = "https://claude.ai/api/mcp/auth_callback"


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep test runs away from the on-disk SQLite default.
    os.environ.setdefault("STORAGE_BACKEND", "memory")


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Third-party token endpoint served through httpx.MockTransport."""

    def __init__(self, expires_in: int = 3600, delay: float = 0.0) -> None:
        self.expires_in = expires_in
        self.delay = delay
        self.exchanges = 0
        self.refreshes = 0
        self.fail_refresh = False
        self.fail_exchange = False
        self.requests: list[dict[str, str]] = []
        self.auth_headers: list[str | None] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[-1] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)
        self.auth_headers.append(request.headers.get("authorization"))
        if self.delay:
            await asyncio.sleep(self.delay)

        grant_type = form.get("grant_type")
        if grant_type == "authorization_code":
            self.exchanges += 1
            if self.fail_exchange:
                return httpx.Response(400, json={"error": "invalid_grant"})
            n = self.exchanges
            return httpx.Response(
                200,
                json={
                    "access_token": f"provider-access-{n}",
                    "refresh_token": f"provider-refresh-{n}",
                    "expires_in": self.expires_in,
                    "x_refresh_token_expires_in": 8_726_400,
                },
            )
        if grant_type == "refresh_token":
            self.refreshes += 1
            if self.fail_refresh:
                return httpx.Response(400, json={"error": "invalid_grant"})
            n = self.refreshes
            return httpx.Response(
                200,
                json={
                    "access_token": f"refreshed-access-{n}",
                    "refresh_token": f"refreshed-refresh-{n}",
                    "expires_in": self.expires_in,
                },
            )
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def client(self, config: BrokerConfig) -> UpstreamOAuthClient:
        transport = httpx.MockTransport(self.handler)
        return UpstreamOAuthClient(
            config.upstream, http_client=httpx.AsyncClient(transport=transport)
        )


def make_broker_config(**policy: object) -> BrokerConfig:
    return parse_broker_config(
        {
            "upstream": {
                "authorization_endpoint": PROVIDER_AUTHORIZE_URL,
                "token_endpoint": PROVIDER_TOKEN_URL,
                "client_id": "provider-client",
                "client_secret": "provider-secret",
                "scopes": ["com.provider.accounting"],
            },
            "policy": dict(policy),
            "security": {
                "rate_limit_per_ip": 10_000,
                "oauth_rate_limit_per_ip": 10_000,
            },
        }
    )


def make_pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def broker_config() -> BrokerConfig:
    return make_broker_config()


@pytest.fixture
def config_factory():
    return make_broker_config


@pytest.fixture
def pkce_pair() -> tuple[str, str]:
    return make_pkce_pair()
