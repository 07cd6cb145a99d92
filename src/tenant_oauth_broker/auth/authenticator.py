"""Per-call gate: bearer token to tenant credentials."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from tenant_oauth_broker.errors import ReauthorizationRequired, Unauthenticated
from tenant_oauth_broker.locks import TenantLockCoordinator
from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.services.token_refresh import TokenRefreshService
from tenant_oauth_broker.storage.broker_tokens import BrokerTokenStore
from tenant_oauth_broker.storage.sessions import CompanySessionStore
from tenant_oauth_broker.utils.time import Clock
from tenant_oauth_broker.utils.tokens import is_well_formed_broker_token

logger = logging.getLogger(__name__)

_TOUCH_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class AuthenticatedTenant:
    tenant_id: str
    session_id: str
    access_token: str = field(repr=False)
    broker_token_expires_at: float


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = value.strip()
    return token or None


class RequestAuthenticator:
    """Resolves a broker token to the tenant's current access token.

    Fails with Unauthenticated when the broker token is missing or expired,
    and with ReauthorizationRequired when the tenant connection is gone or
    cannot be refreshed.
    """

    def __init__(
        self,
        *,
        broker_tokens: BrokerTokenStore,
        sessions: CompanySessionStore,
        refresher: TokenRefreshService,
        locks: TenantLockCoordinator,
        clock: Clock = time.time,
    ) -> None:
        self._broker_tokens = broker_tokens
        self._sessions = sessions
        self._refresher = refresher
        self._locks = locks
        self._clock = clock

    async def authenticate(self, token: str | None) -> AuthenticatedTenant:
        if not token:
            raise Unauthenticated("Missing bearer token")

        record = None
        if is_well_formed_broker_token(token):
            record = await self._broker_tokens.resolve(token)
        if record is None:
            logger.info("Rejected unknown or expired broker token %s", preview(token))
            raise Unauthenticated("Invalid or expired access token")

        session = await self._sessions.get(record.session_id)
        if session is None:
            logger.info("Broker token %s has no company session", preview(token))
            raise ReauthorizationRequired("No connected company for this token")

        session = await self._refresher.ensure_fresh(record.session_id)

        if self._clock() - session.last_used_at >= _TOUCH_INTERVAL_SECONDS:
            # Token writes happen under the tenant lock; re-read so a touch never
            # writes back tokens that a refresh has just replaced.
            async with self._locks.hold(session.tenant_id):
                current = await self._sessions.get(record.session_id)
                if current is None:
                    raise ReauthorizationRequired("No connected company for this token")
                session = await self._sessions.touch(current)

        return AuthenticatedTenant(
            tenant_id=session.tenant_id,
            session_id=session.session_id,
            access_token=session.access_token,
            broker_token_expires_at=record.expires_at,
        )
