"""Third-party callback leg: turn the provider's code into a tenant session."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from tenant_oauth_broker.auth.broker_config import PolicyConfig
from tenant_oauth_broker.errors import UpstreamTokenError
from tenant_oauth_broker.locks import TenantLockCoordinator
from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.sessions import CompanySessionStore
from tenant_oauth_broker.storage.short_lived import (
    AuthorizationCodeStore,
    ChallengeStore,
    StateBridgeStore,
)
from tenant_oauth_broker.upstream.client import UpstreamOAuthClient
from tenant_oauth_broker.utils.http import append_query
from tenant_oauth_broker.utils.tokens import InnerState, InnerStateError

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 64
_MAX_TENANT_ID_LENGTH = 128


class CallbackError(Exception):
    """Callback failure rendered as an HTML page."""

    def __init__(self, title: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.title = title
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class CallbackParams:
    code: str | None
    tenant_id: str | None
    state: str | None
    error: str | None


def parse_callback_params(params: Mapping[str, str], tenant_param: str) -> CallbackParams:
    def get(name: str) -> str | None:
        return (params.get(name) or "").strip() or None

    raw_error = get("error")
    safe_error = None
    if raw_error:
        safe_error = "".join(
            c for c in raw_error[:_MAX_ERROR_LENGTH] if c.isalnum() or c in "_- "
        )
    return CallbackParams(
        code=get("code"),
        tenant_id=get("tenantId") or get(tenant_param),
        state=get("state"),
        error=safe_error,
    )


class CallbackHandler:
    """Completes the inner leg and mints the broker authorization code.

    Runs under the tenant lock. If another consent for the same tenant has
    already produced a usable session, the new session id is linked to it
    and the provider's code is not exchanged.
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
    ) -> None:
        self._challenges = challenges
        self._bridge = bridge
        self._codes = codes
        self._sessions = sessions
        self._locks = locks
        self._upstream = upstream
        self._policy = policy

    async def handle(self, params: CallbackParams, callback_url: str) -> str:
        """Return the outer redirect URL, or raise CallbackError."""
        if params.error:
            if params.state:
                await self._bridge.consume(params.state)
            logger.warning("Third-party authorization failed: %s", params.error)
            raise CallbackError(
                "Authorization Failed",
                f"The provider reported an error: {params.error}",
            )

        if not params.code or not params.tenant_id or not params.state:
            missing = [
                name
                for name, value in (
                    ("code", params.code),
                    ("tenantId", params.tenant_id),
                    ("state", params.state),
                )
                if not value
            ]
            logger.warning("Callback missing parameters: %s", ", ".join(missing))
            raise CallbackError(
                "Invalid OAuth Callback",
                f"Missing required parameters: {', '.join(missing)}",
            )
        if len(params.tenant_id) > _MAX_TENANT_ID_LENGTH:
            raise CallbackError("Invalid OAuth Callback", "Tenant id is too long")

        try:
            decoded = InnerState.decode(params.state)
        except InnerStateError as exc:
            logger.warning("Callback state could not be decoded: %s", exc)
            raise CallbackError(
                "Invalid OAuth State",
                "Could not decode OAuth state parameter. Please restart authorization.",
            ) from exc

        entry = await self._bridge.consume(params.state)
        if entry is None:
            logger.warning("Callback state %s is unknown or expired", preview(params.state, 12))
            raise CallbackError(
                "Invalid OAuth State",
                "OAuth state is unknown or has expired. Please restart authorization.",
            )
        if entry.outer_state != decoded.outer_state or entry.session_id != decoded.session_id:
            logger.warning("Callback state payload does not match its bridge entry")
            raise CallbackError(
                "Invalid OAuth State",
                "OAuth state does not match this authorization request.",
            )

        challenge = await self._challenges.get(entry.outer_state)
        if challenge is None:
            raise CallbackError(
                "Authorization Expired",
                "This authorization request has expired. Please start again.",
            )

        tenant_id = params.tenant_id
        async with self._locks.hold(tenant_id):
            existing = await self._sessions.find_reusable(
                tenant_id, self._policy.shared_session_margin_seconds
            )
            if existing is not None:
                await self._sessions.clone(existing, entry.session_id)
                logger.info(
                    "Tenant %s already connected; third-party code discarded", tenant_id
                )
            else:
                await self._exchange_and_store(
                    params.code, tenant_id, entry.session_id, callback_url
                )

            code = await self._codes.issue(entry.session_id, entry.outer_state)

        return append_query(
            challenge.redirect_uri, {"code": code.code, "state": entry.outer_state}
        )

    async def _exchange_and_store(
        self,
        code: str,
        tenant_id: str,
        session_id: str,
        callback_url: str,
    ) -> None:
        try:
            tokens = await self._upstream.exchange_code(code, callback_url)
        except UpstreamTokenError as exc:
            raise CallbackError(
                "Authorization Failed",
                "Could not complete authorization with the provider.",
                status_code=502,
            ) from exc

        session = await self._sessions.create(
            session_id=session_id,
            tenant_id=tenant_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            refresh_token_expires_in=tokens.refresh_token_expires_in,
        )
        # A consent issues a new token pair; older copies for the tenant must follow it.
        siblings = await self._sessions.find_by_tenant(tenant_id)
        if len(siblings) > 1:
            await self._sessions.update_tenant_tokens(
                tenant_id,
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                token_expires_at=session.token_expires_at,
                refresh_token_expires_at=session.refresh_token_expires_at,
            )
