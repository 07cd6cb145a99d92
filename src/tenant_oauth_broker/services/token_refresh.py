"""Tenant token refresh with per-tenant serialization and fan-out."""

from __future__ import annotations

import logging
import time

from tenant_oauth_broker.errors import ReauthorizationRequired, UpstreamTokenError
from tenant_oauth_broker.locks import TenantLockCoordinator
from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.sessions import CompanySession, CompanySessionStore
from tenant_oauth_broker.upstream.client import UpstreamOAuthClient
from tenant_oauth_broker.utils.time import Clock

logger = logging.getLogger(__name__)


class TokenRefreshService:
    """Keeps a session's third-party tokens usable.

    Refreshes are serialized on the tenant id, not the session id: every
    session of a tenant shares one refresh token and the provider rotates it
    on use, so two concurrent refreshes would invalidate each other.
    """

    def __init__(
        self,
        sessions: CompanySessionStore,
        locks: TenantLockCoordinator,
        upstream: UpstreamOAuthClient,
        refresh_margin_seconds: float = 300,
        clock: Clock = time.time,
    ) -> None:
        self._sessions = sessions
        self._locks = locks
        self._upstream = upstream
        self._refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock

    def needs_refresh(self, session: CompanySession) -> bool:
        return session.seconds_remaining(self._clock()) < self._refresh_margin_seconds

    async def ensure_fresh(self, session_id: str) -> CompanySession:
        """Return the session, refreshing the tenant's tokens first if due.

        Raises ReauthorizationRequired when the session is gone or the
        provider refuses the refresh.
        """
        session = await self._sessions.get(session_id)
        if session is None:
            raise ReauthorizationRequired("Company session not found")
        if not self.needs_refresh(session):
            return session

        async with self._locks.hold(session.tenant_id):
            current = await self._sessions.get(session_id)
            if current is None:
                raise ReauthorizationRequired("Company session was removed")
            if not self.needs_refresh(current):
                logger.debug(
                    "Tenant %s already refreshed while waiting", current.tenant_id
                )
                return current
            await self._refresh_locked(current)

        refreshed = await self._sessions.get(session_id)
        if refreshed is None:
            raise ReauthorizationRequired("Company session was removed")
        return refreshed

    async def _refresh_locked(self, session: CompanySession) -> None:
        remaining = session.seconds_remaining(self._clock())
        logger.info(
            "Refreshing tokens for tenant %s (session %s, %s)",
            session.tenant_id,
            preview(session.session_id),
            "expired" if remaining <= 0 else f"expires in {int(remaining)}s",
        )
        try:
            tokens = await self._upstream.refresh(session.refresh_token)
        except UpstreamTokenError as exc:
            logger.warning(
                "Token refresh failed for tenant %s: %s (status=%s error=%s)",
                session.tenant_id,
                exc,
                exc.status_code,
                exc.error,
            )
            raise ReauthorizationRequired(
                "Third-party token refresh failed; reauthorization required"
            ) from exc

        now = self._clock()
        updated = await self._sessions.update_tenant_tokens(
            session.tenant_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=now + tokens.expires_in,
            refresh_token_expires_at=(
                now + tokens.refresh_token_expires_in
                if tokens.refresh_token_expires_in is not None
                else None
            ),
        )
        logger.info(
            "Refreshed tokens for tenant %s across %d session(s)", session.tenant_id, updated
        )
