"""Durable per-tenant third-party credentials.

Several session ids may point at the same tenant. Each keeps its own copy of
the tenant's current tokens; ``update_tenant_tokens`` rewrites every copy so
none is left stale after a refresh.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, replace

from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.base import KeyValueStore
from tenant_oauth_broker.utils.time import Clock

logger = logging.getLogger(__name__)

SESSIONS_COLLECTION = "company_sessions"


@dataclass
class CompanySession:
    session_id: str
    tenant_id: str
    access_token: str
    refresh_token: str
    token_expires_at: float
    created_at: float
    last_used_at: float
    refresh_token_expires_at: float | None = None

    def seconds_remaining(self, now: float) -> float:
        return self.token_expires_at - now

    def __repr__(self) -> str:
        return (
            f"CompanySession(session_id={self.session_id!r}, "
            f"tenant_id={self.tenant_id!r}, "
            f"token_expires_at={self.token_expires_at!r})"
        )


class CompanySessionStore:
    def __init__(self, store: KeyValueStore, clock: Clock = time.time) -> None:
        self._store = store
        self._clock = clock

    async def save(self, session: CompanySession) -> None:
        await self._store.put(
            SESSIONS_COLLECTION,
            session.session_id,
            asdict(session),
            index=session.tenant_id,
        )

    async def create(
        self,
        *,
        session_id: str,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: float,
        refresh_token_expires_in: float | None = None,
    ) -> CompanySession:
        now = self._clock()
        session = CompanySession(
            session_id=session_id,
            tenant_id=tenant_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=now + expires_in,
            created_at=now,
            last_used_at=now,
            refresh_token_expires_at=(
                now + refresh_token_expires_in if refresh_token_expires_in else None
            ),
        )
        await self.save(session)
        logger.info(
            "Stored company session %s for tenant %s",
            preview(session_id),
            tenant_id,
        )
        return session

    async def get(self, session_id: str) -> CompanySession | None:
        data = await self._store.get(SESSIONS_COLLECTION, session_id)
        if data is None:
            return None
        return CompanySession(**data)

    async def touch(self, session: CompanySession) -> CompanySession:
        """Record use of a session and return the updated copy."""
        touched = replace(session, last_used_at=self._clock())
        await self.save(touched)
        return touched

    async def find_by_tenant(self, tenant_id: str) -> list[CompanySession]:
        return [
            CompanySession(**data)
            for _, data in await self._store.find(SESSIONS_COLLECTION, tenant_id)
        ]

    async def find_reusable(
        self,
        tenant_id: str,
        min_remaining_seconds: float,
    ) -> CompanySession | None:
        """Return the tenant session whose tokens last longest, if long enough."""
        now = self._clock()
        candidates = [
            session
            for session in await self.find_by_tenant(tenant_id)
            if session.seconds_remaining(now) >= min_remaining_seconds
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda session: session.token_expires_at)

    async def clone(self, source: CompanySession, session_id: str) -> CompanySession:
        """Create a new session id that shares the source tenant's tokens."""
        now = self._clock()
        cloned = replace(source, session_id=session_id, created_at=now, last_used_at=now)
        await self.save(cloned)
        logger.info(
            "Linked session %s to existing connection for tenant %s",
            preview(session_id),
            source.tenant_id,
        )
        return cloned

    async def update_tenant_tokens(
        self,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: str,
        token_expires_at: float,
        refresh_token_expires_at: float | None = None,
    ) -> int:
        """Write new tokens to every session of the tenant. Returns the count."""
        sessions = await self.find_by_tenant(tenant_id)
        for session in sessions:
            updated = replace(
                session,
                access_token=access_token,
                refresh_token=refresh_token,
                token_expires_at=token_expires_at,
                refresh_token_expires_at=(
                    refresh_token_expires_at
                    if refresh_token_expires_at is not None
                    else session.refresh_token_expires_at
                ),
            )
            await self.save(updated)
        logger.info("Updated tokens on %d session(s) for tenant %s", len(sessions), tenant_id)
        return len(sessions)

    async def delete_tenant(self, tenant_id: str) -> int:
        sessions = await self.find_by_tenant(tenant_id)
        for session in sessions:
            await self._store.delete(SESSIONS_COLLECTION, session.session_id)
        return len(sessions)

    async def tenant_ids(self) -> set[str]:
        return {data["tenant_id"] for _, data in await self._store.items(SESSIONS_COLLECTION)}

    async def stats(self) -> dict[str, int]:
        now = self._clock()
        sessions = [
            CompanySession(**data)
            for _, data in await self._store.items(SESSIONS_COLLECTION)
        ]
        return {
            "sessions": len(sessions),
            "tenants": len({session.tenant_id for session in sessions}),
            "expired_tokens": sum(1 for s in sessions if s.seconds_remaining(now) <= 0),
        }
