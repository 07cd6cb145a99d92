"""Tests for the /authorize leg."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from tenant_oauth_broker.auth.authorize import (
    AuthorizationOrchestrator,
    AuthorizeRequest,
    parse_authorize_request,
)
from tenant_oauth_broker.errors import OAuthError
from tenant_oauth_broker.locks import TenantLockCoordinator
from tenant_oauth_broker.storage.memory import MemoryStore
from tenant_oauth_broker.storage.sessions import CompanySessionStore
from tenant_oauth_broker.storage.short_lived import (
    AuthorizationCodeStore,
    ChallengeStore,
    StateBridgeStore,
)
from tenant_oauth_broker.utils.tokens import InnerState

ALLOWED_HOSTS = ("claude.ai", "localhost", "127.0.0.1")
CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
CALLBACK_URL = "https://broker.example.com/oauth/callback"


def _params(**overrides: str) -> dict[str, str]:
    params = {
        "response_type": "code",
        "client_id": "client-1",
        "redirect_uri": "https://claude.ai/api/mcp/auth_callback",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
        "state": "outer-state",
    }
    params.update(overrides)
    return params


class TestParseAuthorizeRequest:
    def test_valid_request(self) -> None:
        request = parse_authorize_request(_params(scope="read"), ALLOWED_HOSTS)
        assert request.client_id == "client-1"
        assert request.code_challenge_method == "S256"
        assert request.scope == "read"

    @pytest.mark.parametrize(
        "missing",
        [
            "response_type",
            "client_id",
            "redirect_uri",
            "code_challenge",
            "code_challenge_method",
            "state",
        ],
    )
    def test_missing_parameter_is_named(self, missing: str) -> None:
        params = _params()
        del params[missing]
        with pytest.raises(OAuthError) as exc_info:
            parse_authorize_request(params, ALLOWED_HOSTS)
        assert exc_info.value.error == "invalid_request"
        assert missing in exc_info.value.description

    def test_rejects_other_response_types(self) -> None:
        with pytest.raises(OAuthError) as exc_info:
            parse_authorize_request(_params(response_type="token"), ALLOWED_HOSTS)
        assert "response_type" in exc_info.value.description

    def test_rejects_unknown_challenge_method(self) -> None:
        with pytest.raises(OAuthError) as exc_info:
            parse_authorize_request(_params(code_challenge_method="S512"), ALLOWED_HOSTS)
        assert "code_challenge_method" in exc_info.value.description

    def test_rejects_malformed_challenge(self) -> None:
        with pytest.raises(OAuthError) as exc_info:
            parse_authorize_request(_params(code_challenge="short"), ALLOWED_HOSTS)
        assert "code_challenge" in exc_info.value.description

    @pytest.mark.parametrize(
        "redirect_uri",
        [
            "https://evil.example.com/cb",
            "https://claude.ai.evil.example.com/cb",
            "https://evil.example.com/claude.ai",
            "https://user@claude.ai/cb",
            "http://claude.ai/cb",
            "https://claude.ai/cb#frag",
            "not a url",
        ],
    )
    def test_rejects_disallowed_redirects(self, redirect_uri: str) -> None:
        with pytest.raises(OAuthError) as exc_info:
            parse_authorize_request(_params(redirect_uri=redirect_uri), ALLOWED_HOSTS)
        assert "redirect_uri" in exc_info.value.description

    def test_allows_loopback_over_http(self) -> None:
        request = parse_authorize_request(
            _params(redirect_uri="http://localhost:33418/callback"), ALLOWED_HOSTS
        )
        assert request.redirect_uri == "http://localhost:33418/callback"

    def test_tenant_id_parameter_is_ignored(self) -> None:
        request = parse_authorize_request(_params(tenant_id="realm-9"), ALLOWED_HOSTS)
        assert not hasattr(request, "tenant_id")
        assert "realm-9" not in repr(request)


def _request(**overrides) -> AuthorizeRequest:
    values = {
        "client_id": "client-1",
        "redirect_uri": "https://claude.ai/api/mcp/auth_callback",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
        "state": "outer-state",
    }
    values.update(overrides)
    return AuthorizeRequest(**values)


@pytest.fixture
def parts(clock, provider, config_factory):
    def build(**policy):
        config = config_factory(**policy)
        short_lived = MemoryStore()
        stores = {
            "challenges": ChallengeStore(short_lived, clock=clock),
            "bridge": StateBridgeStore(short_lived, clock=clock),
            "codes": AuthorizationCodeStore(short_lived, clock=clock),
            "sessions": CompanySessionStore(MemoryStore(), clock=clock),
        }
        orchestrator = AuthorizationOrchestrator(
            locks=TenantLockCoordinator(),
            upstream=provider.client(config),
            policy=config.policy,
            clock=clock,
            **stores,
        )
        return orchestrator, stores

    return build


async def _connect(sessions: CompanySessionStore, tenant_id: str, expires_in: float = 3600):
    return await sessions.create(
        session_id=f"existing-{tenant_id}",
        tenant_id=tenant_id,
        access_token="access",
        refresh_token="refresh",
        expires_in=expires_in,
    )


class TestAuthorizationOrchestrator:
    @pytest.mark.asyncio
    async def test_fresh_consent_redirects_to_provider(self, parts, clock) -> None:
        orchestrator, stores = parts()
        outcome = await orchestrator.authorize(_request(), CALLBACK_URL)

        assert outcome.shared is False
        assert outcome.redirect_url.startswith("https://provider.example.com/oauth2/authorize?")
        inner_state = parse_qs(urlparse(outcome.redirect_url).query)["state"][0]
        decoded = InnerState.decode(inner_state)
        assert decoded.outer_state == "outer-state"
        assert decoded.session_id == outcome.session_id
        assert decoded.issued_at == clock.now

        entry = await stores["bridge"].get(inner_state)
        assert entry.outer_state == "outer-state"
        assert entry.session_id == outcome.session_id
        challenge = await stores["challenges"].get("outer-state")
        assert challenge.code_challenge == CHALLENGE

    @pytest.mark.asyncio
    async def test_single_tenant_is_shared(self, parts) -> None:
        orchestrator, stores = parts()
        existing = await _connect(stores["sessions"], "realm-1")

        outcome = await orchestrator.authorize(_request(), CALLBACK_URL)

        assert outcome.shared is True
        query = parse_qs(urlparse(outcome.redirect_url).query)
        assert outcome.redirect_url.startswith("https://claude.ai/api/mcp/auth_callback?")
        assert query["state"] == ["outer-state"]
        code = await stores["codes"].get(query["code"][0])
        assert code.session_id == outcome.session_id

        linked = await stores["sessions"].get(outcome.session_id)
        assert linked.tenant_id == "realm-1"
        assert linked.access_token == existing.access_token

    @pytest.mark.asyncio
    async def test_session_near_expiry_is_not_shared(self, parts) -> None:
        orchestrator, stores = parts()
        await _connect(stores["sessions"], "realm-1", expires_in=1799)

        outcome = await orchestrator.authorize(_request(), CALLBACK_URL)
        assert outcome.shared is False

    @pytest.mark.asyncio
    async def test_several_tenants_take_fresh_path(self, parts) -> None:
        orchestrator, stores = parts()
        await _connect(stores["sessions"], "realm-1")
        await _connect(stores["sessions"], "realm-2")

        outcome = await orchestrator.authorize(_request(), CALLBACK_URL)
        assert outcome.shared is False

    @pytest.mark.asyncio
    async def test_requested_tenant_cannot_pick_a_connection(self, parts) -> None:
        orchestrator, stores = parts()
        await _connect(stores["sessions"], "realm-1")
        await _connect(stores["sessions"], "realm-2")
        request = parse_authorize_request(
            _params(client_id="other-client", tenant_id="realm-2"), ALLOWED_HOSTS
        )

        outcome = await orchestrator.authorize(request, CALLBACK_URL)

        assert outcome.shared is False
        assert outcome.redirect_url.startswith("https://provider.example.com/oauth2/authorize?")
        assert await stores["sessions"].get(outcome.session_id) is None
        assert len(await stores["sessions"].find_by_tenant("realm-2")) == 1

    @pytest.mark.asyncio
    async def test_configured_shared_tenant(self, parts) -> None:
        orchestrator, stores = parts(shared_tenant_id="realm-2")
        await _connect(stores["sessions"], "realm-1")
        await _connect(stores["sessions"], "realm-2")

        assert await orchestrator.resolve_tenant() == "realm-2"

    @pytest.mark.asyncio
    async def test_single_tenant_reuse_can_be_disabled(self, parts) -> None:
        orchestrator, stores = parts(reuse_single_tenant=False)
        await _connect(stores["sessions"], "realm-1")

        assert await orchestrator.resolve_tenant() is None
