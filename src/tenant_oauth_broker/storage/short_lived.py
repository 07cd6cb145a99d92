"""Short-lived flow records: PKCE challenges, state bridge entries, authorization codes.

All three expire after a few minutes. Expired entries are dropped lazily when
looked up and in bulk by ``sweep()``, which the HTTP app runs periodically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Generic, TypeVar

from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.base import KeyValueStore
from tenant_oauth_broker.storage.memory import MemoryStore
from tenant_oauth_broker.utils.time import Clock
from tenant_oauth_broker.utils.tokens import generate_authorization_code

logger = logging.getLogger(__name__)

CHALLENGES_COLLECTION = "pkce_challenges"
STATE_BRIDGE_COLLECTION = "state_bridge"
AUTH_CODES_COLLECTION = "authorization_codes"


@dataclass
class PKCEChallenge:
    code_challenge: str
    method: str
    redirect_uri: str
    client_id: str
    created_at: float
    scope: str | None = None


@dataclass
class StateBridgeEntry:
    outer_state: str
    session_id: str
    created_at: float


@dataclass
class AuthorizationCode:
    code: str
    session_id: str
    outer_state: str
    created_at: float
    expires_at: float
    used: bool = False
    used_at: float | None = None


R = TypeVar("R")


class _ExpiringStore(Generic[R]):
    collection: str
    record_type: type

    def __init__(
        self,
        store: KeyValueStore | None = None,
        ttl_seconds: int = 600,
        clock: Clock = time.time,
    ) -> None:
        self._store: KeyValueStore = store if store is not None else MemoryStore()
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    def _decode(self, data: dict[str, Any]) -> R:
        return self.record_type(**data)

    def _is_expired(self, record: R, now: float) -> bool:
        return now - record.created_at > self._ttl_seconds  # type: ignore[attr-defined]

    async def _load(self, key: str) -> R | None:
        data = await self._store.get(self.collection, key)
        if data is None:
            return None
        record = self._decode(data)
        if self._is_expired(record, self._clock()):
            await self._store.delete(self.collection, key)
            return None
        return record

    async def delete(self, key: str) -> bool:
        return await self._store.delete(self.collection, key)

    async def sweep(self) -> int:
        """Remove expired records. Returns the number removed."""
        now = self._clock()
        removed = 0
        async with self._lock:
            for key, data in await self._store.items(self.collection):
                if self._is_expired(self._decode(data), now):
                    await self._store.delete(self.collection, key)
                    removed += 1
        if removed:
            logger.debug("Swept %d expired record(s) from %s", removed, self.collection)
        return removed


class ChallengeStore(_ExpiringStore[PKCEChallenge]):
    """PKCE challenges keyed by the outer client's state."""

    collection = CHALLENGES_COLLECTION
    record_type = PKCEChallenge

    async def save(
        self,
        outer_state: str,
        *,
        code_challenge: str,
        method: str,
        redirect_uri: str,
        client_id: str,
        scope: str | None = None,
    ) -> PKCEChallenge:
        challenge = PKCEChallenge(
            code_challenge=code_challenge,
            method=method,
            redirect_uri=redirect_uri,
            client_id=client_id,
            created_at=self._clock(),
            scope=scope,
        )
        await self._store.put(self.collection, outer_state, asdict(challenge))
        return challenge

    async def get(self, outer_state: str) -> PKCEChallenge | None:
        return await self._load(outer_state)


class StateBridgeStore(_ExpiringStore[StateBridgeEntry]):
    """Maps an inner state token to the outer state and session id."""

    collection = STATE_BRIDGE_COLLECTION
    record_type = StateBridgeEntry

    async def save(
        self,
        inner_state: str,
        *,
        outer_state: str,
        session_id: str,
    ) -> StateBridgeEntry:
        entry = StateBridgeEntry(
            outer_state=outer_state,
            session_id=session_id,
            created_at=self._clock(),
        )
        await self._store.put(self.collection, inner_state, asdict(entry))
        return entry

    async def get(self, inner_state: str) -> StateBridgeEntry | None:
        return await self._load(inner_state)

    async def consume(self, inner_state: str) -> StateBridgeEntry | None:
        """Return and remove the entry, so only one caller ever gets it."""
        async with self._lock:
            entry = await self._load(inner_state)
            if entry is not None:
                await self._store.delete(self.collection, inner_state)
            return entry


class AuthorizationCodeStore(_ExpiringStore[AuthorizationCode]):
    """Single-use broker authorization codes.

    Used codes are kept for ``used_retention_seconds`` so a replay gets a
    specific log line instead of looking like an unknown code.
    """

    collection = AUTH_CODES_COLLECTION
    record_type = AuthorizationCode

    def __init__(
        self,
        store: KeyValueStore | None = None,
        ttl_seconds: int = 600,
        clock: Clock = time.time,
        used_retention_seconds: int = 300,
    ) -> None:
        super().__init__(store, ttl_seconds=ttl_seconds, clock=clock)
        self._used_retention_seconds = used_retention_seconds

    def _is_expired(self, record: AuthorizationCode, now: float) -> bool:
        if record.used and record.used_at is not None:
            return now - record.used_at > self._used_retention_seconds
        return now > record.expires_at

    async def issue(self, session_id: str, outer_state: str) -> AuthorizationCode:
        now = self._clock()
        record = AuthorizationCode(
            code=generate_authorization_code(),
            session_id=session_id,
            outer_state=outer_state,
            created_at=now,
            expires_at=now + self._ttl_seconds,
        )
        await self._store.put(self.collection, record.code, asdict(record))
        logger.info(
            "Issued authorization code %s for session %s",
            preview(record.code),
            preview(session_id),
        )
        return record

    async def get(self, code: str) -> AuthorizationCode | None:
        return await self._load(code)

    async def is_redeemable(self, code: str) -> bool:
        """True when the code exists, is unused and has not expired. Does not consume it."""
        record = await self._load(code)
        return record is not None and not record.used and self._clock() <= record.expires_at

    async def consume(self, code: str) -> AuthorizationCode | None:
        """Mark a code used and return it.

        Returns None when the code is unknown, expired or already used. The
        used flag is persisted before this returns.
        """
        async with self._lock:
            record = await self._load(code)
            if record is None:
                return None
            now = self._clock()
            if record.used:
                logger.warning(
                    "Replay of used authorization code %s (session %s)",
                    preview(code),
                    preview(record.session_id),
                )
                return None
            if now > record.expires_at:
                await self._store.delete(self.collection, code)
                return None
            record.used = True
            record.used_at = now
            await self._store.put(self.collection, code, asdict(record))
            return record

    async def stats(self) -> dict[str, int]:
        now = self._clock()
        total = used = expired = 0
        for _, data in await self._store.items(self.collection):
            record = self._decode(data)
            total += 1
            if record.used:
                used += 1
            elif now > record.expires_at:
                expired += 1
        return {"total": total, "used": used, "unused": total - used - expired, "expired": expired}
