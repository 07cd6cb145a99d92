"""Outer /authorize leg: validate, record the PKCE challenge, pick a path."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

from tenant_oauth_broker.auth import pkce
from tenant_oauth_broker.auth.broker_config import PolicyConfig
from tenant_oauth_broker.errors import OAuthError
from tenant_oauth_broker.locks import FIRST_CONNECTION_KEY, TenantLockCoordinator
from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.sessions import CompanySessionStore
from tenant_oauth_broker.storage.short_lived import (
    AuthorizationCodeStore,
    ChallengeStore,
    StateBridgeStore,
)
from tenant_oauth_broker.upstream.client import UpstreamOAuthClient
from tenant_oauth_broker.utils.http import append_query, check_redirect_uri
from tenant_oauth_broker.utils.time import Clock
from tenant_oauth_broker.utils.tokens import InnerState, generate_session_id

logger = logging.getLogger(__name__)

_MAX_CLIENT_ID_LENGTH = 256
_MAX_REDIRECT_URI_LENGTH = 2048
_MAX_STATE_LENGTH = 1024

_REQUIRED_PARAMS = (
    "response_type",
    "client_id",
    "redirect_uri",
    "code_challenge",
    "code_challenge_method",
    "state",
)


@dataclass(frozen=True)
class AuthorizeRequest:
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str
    scope: str | None = None


@dataclass(frozen=True)
class AuthorizeOutcome:
    redirect_url: str
    session_id: str
    shared: bool


def parse_authorize_request(
    params: Mapping[str, str],
    allowed_redirect_hosts: tuple[str, ...],
) -> AuthorizeRequest:
    """Validate /authorize query parameters.

    Raises OAuthError(invalid_request) naming the first offending field.
    """
    values = {name: (params.get(name) or "").strip() for name in _REQUIRED_PARAMS}
    for name in _REQUIRED_PARAMS:
        if not values[name]:
            raise OAuthError("invalid_request", f"Missing required parameter: {name}")

    if values["response_type"] != "code":
        raise OAuthError("invalid_request", "Invalid response_type: must be 'code'")
    if len(values["client_id"]) > _MAX_CLIENT_ID_LENGTH:
        raise OAuthError("invalid_request", "Invalid client_id: too long")
    if len(values["state"]) > _MAX_STATE_LENGTH:
        raise OAuthError("invalid_request", "Invalid state: too long")

    redirect_uri = values["redirect_uri"]
    if len(redirect_uri) > _MAX_REDIRECT_URI_LENGTH:
        raise OAuthError("invalid_request", "Invalid redirect_uri: too long")
    redirect_error = check_redirect_uri(redirect_uri, allowed_redirect_hosts)
    if redirect_error:
        raise OAuthError("invalid_request", f"Invalid redirect_uri: {redirect_error}")

    method = values["code_challenge_method"]
    if method not in pkce.SUPPORTED_METHODS:
        raise OAuthError(
            "invalid_request",
            "Invalid code_challenge_method: must be 'S256' or 'plain'",
        )
    if not pkce.is_valid_code_challenge(values["code_challenge"], method):
        raise OAuthError("invalid_request", "Invalid code_challenge: malformed value")

    return AuthorizeRequest(
        client_id=values["client_id"],
        redirect_uri=redirect_uri,
        code_challenge=values["code_challenge"],
        code_challenge_method=method,
        state=values["state"],
        scope=(params.get("scope") or "").strip() or None,
    )


class AuthorizationOrchestrator:
    """Chooses between reusing a tenant connection and a fresh third-party consent.

    The decision runs under the tenant lock so that a second first-time
    connection for a tenant sees the session the first one created instead
    of starting its own consent.
    """

    def __init__(
        self,
        *,
        challenges: ChallengeStore,
        bridge: StateBridgeStore,
        codes: AuthorizationCodeStore,
        sessions: CompanySessionStore,
        locks: TenantLockCoordinator,
        upstream: UpstreamOAuthClient,
        policy: PolicyConfig,
        clock: Clock = time.time,
    ) -> None:
        self._challenges = challenges
        self._bridge = bridge
        self._codes = codes
        self._sessions = sessions
        self._locks = locks
        self._upstream = upstream
        self._policy = policy
        self._clock = clock

    async def resolve_tenant(self) -> str | None:
        """Pick the tenant whose existing connection may be shared, if any.

        Only server-side policy decides this; nothing in the request can name a tenant.
        """
        if self._policy.shared_tenant_id:
            return self._policy.shared_tenant_id
        if self._policy.reuse_single_tenant:
            tenant_ids = await self._sessions.tenant_ids()
            if len(tenant_ids) == 1:
                return next(iter(tenant_ids))
        return None

    async def authorize(self, request: AuthorizeRequest, callback_url: str) -> AuthorizeOutcome:
        await self._challenges.save(
            request.state,
            code_challenge=request.code_challenge,
            method=request.code_challenge_method,
            redirect_uri=request.redirect_uri,
            client_id=request.client_id,
            scope=request.scope,
        )
        tenant_id = await self.resolve_tenant()
        session_id = generate_session_id()

        async with self._locks.hold(tenant_id or FIRST_CONNECTION_KEY):
            existing = None
            if tenant_id is not None:
                existing = await self._sessions.find_reusable(
                    tenant_id, self._policy.shared_session_margin_seconds
                )

            if existing is not None:
                await self._sessions.clone(existing, session_id)
                code = await self._codes.issue(session_id, request.state)
                logger.info(
                    "Shared connection for tenant %s: client %s skips third-party consent",
                    tenant_id,
                    request.client_id,
                )
                redirect_url = append_query(
                    request.redirect_uri, {"code": code.code, "state": request.state}
                )
                return AuthorizeOutcome(
                    redirect_url=redirect_url, session_id=session_id, shared=True
                )

            inner_state = InnerState.create(request.state, session_id, clock=self._clock).encode()
            await self._bridge.save(
                inner_state,
                outer_state=request.state,
                session_id=session_id,
            )

        logger.info(
            "Starting third-party consent for client %s (session %s)",
            request.client_id,
            preview(session_id),
        )
        redirect_url = self._upstream.authorization_url(inner_state, callback_url)
        return AuthorizeOutcome(redirect_url=redirect_url, session_id=session_id, shared=False)
