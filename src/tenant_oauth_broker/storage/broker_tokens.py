"""Durable store for broker-issued bearer tokens."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass

from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.base import KeyValueStore
from tenant_oauth_broker.utils.time import Clock
from tenant_oauth_broker.utils.tokens import (
    generate_broker_refresh_token,
    generate_broker_token,
)

logger = logging.getLogger(__name__)

BROKER_TOKENS_COLLECTION = "broker_tokens"


@dataclass
class BrokerToken:
    token: str
    session_id: str
    issued_at: float
    expires_at: float
    client_id: str | None = None
    refresh_token: str | None = None
    refresh_token_expires_at: float | None = None

    def is_active(self, now: float) -> bool:
        return now <= self.expires_at

    def can_refresh(self, now: float) -> bool:
        if not self.refresh_token or self.refresh_token_expires_at is None:
            return False
        return now <= self.refresh_token_expires_at

    def __repr__(self) -> str:
        return (
            f"BrokerToken(token={preview(self.token)!r}, "
            f"session_id={self.session_id!r}, expires_at={self.expires_at!r})"
        )


class BrokerTokenStore:
    """Issues and resolves ``mcp_`` bearer tokens.

    A token issued at T is accepted through T + ttl inclusive. The optional
    refresh token is indexed so it can be looked up without a scan.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    async def issue(
        self,
        session_id: str,
        *,
        client_id: str | None = None,
        with_refresh_token: bool = False,
    ) -> BrokerToken:
        now = self._clock()
        record = BrokerToken(
            token=generate_broker_token(),
            session_id=session_id,
            issued_at=now,
            expires_at=now + self._ttl_seconds,
            client_id=client_id,
        )
        if with_refresh_token:
            record.refresh_token = generate_broker_refresh_token()
            record.refresh_token_expires_at = now + self._refresh_ttl_seconds
        await self._store.put(
            BROKER_TOKENS_COLLECTION,
            record.token,
            asdict(record),
            index=record.refresh_token,
        )
        logger.info(
            "Issued broker token %s for session %s",
            preview(record.token),
            preview(session_id),
        )
        return record

    async def resolve(self, token: str) -> BrokerToken | None:
        """Return the token record if it exists and has not expired."""
        data = await self._store.get(BROKER_TOKENS_COLLECTION, token)
        if data is None:
            return None
        record = BrokerToken(**data)
        if not record.is_active(self._clock()):
            return None
        return record

    async def rotate(self, refresh_token: str, client_id: str | None = None) -> BrokerToken | None:
        """Exchange a refresh token for a new token pair.

        The old pair is deleted first, so a refresh token works once.
        """
        async with self._lock:
            matches = await self._store.find(BROKER_TOKENS_COLLECTION, refresh_token)
            if not matches:
                return None
            key, data = matches[0]
            record = BrokerToken(**data)
            if not record.can_refresh(self._clock()):
                await self._store.delete(BROKER_TOKENS_COLLECTION, key)
                return None
            if client_id and record.client_id and client_id != record.client_id:
                logger.warning(
                    "Refresh token %s presented by a different client", preview(refresh_token)
                )
                return None
            await self._store.delete(BROKER_TOKENS_COLLECTION, key)
            return await self.issue(
                record.session_id,
                client_id=record.client_id,
                with_refresh_token=True,
            )

    async def sweep(self) -> int:
        now = self._clock()
        removed = 0
        async with self._lock:
            for key, data in await self._store.items(BROKER_TOKENS_COLLECTION):
                record = BrokerToken(**data)
                if not record.is_active(now) and not record.can_refresh(now):
                    await self._store.delete(BROKER_TOKENS_COLLECTION, key)
                    removed += 1
        if removed:
            logger.debug("Swept %d expired broker token(s)", removed)
        return removed
