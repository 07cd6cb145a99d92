"""Tests for BrokerTokenStore."""

from __future__ import annotations

import pytest

from tenant_oauth_broker.storage.broker_tokens import BrokerTokenStore
from tenant_oauth_broker.storage.memory import MemoryStore
from tenant_oauth_broker.utils.tokens import is_well_formed_broker_token


class TestBrokerTokenStore:
    @pytest.mark.asyncio
    async def test_issue_and_resolve(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), clock=clock)
        issued = await store.issue("session-1", client_id="client")
        assert is_well_formed_broker_token(issued.token)
        assert issued.refresh_token is None

        resolved = await store.resolve(issued.token)
        assert resolved is not None
        assert resolved.session_id == "session-1"

    @pytest.mark.asyncio
    async def test_ttl_boundary_is_inclusive(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), ttl_seconds=3600, clock=clock)
        issued = await store.issue("session-1")

        clock.advance(3600)
        assert await store.resolve(issued.token) is not None
        clock.advance(1)
        assert await store.resolve(issued.token) is None

    @pytest.mark.asyncio
    async def test_unknown_token(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), clock=clock)
        assert await store.resolve("mcp_" + "0" * 64) is None

    @pytest.mark.asyncio
    async def test_repr_hides_token(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), clock=clock)
        issued = await store.issue("session-1")
        assert issued.token not in repr(issued)

    @pytest.mark.asyncio
    async def test_rotate_issues_new_pair_once(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), clock=clock)
        issued = await store.issue("session-1", client_id="client", with_refresh_token=True)
        assert issued.refresh_token is not None

        clock.advance(4000)
        rotated = await store.rotate(issued.refresh_token, client_id="client")
        assert rotated is not None
        assert rotated.session_id == "session-1"
        assert rotated.token != issued.token
        assert rotated.refresh_token != issued.refresh_token
        assert await store.resolve(rotated.token) is not None

        assert await store.rotate(issued.refresh_token, client_id="client") is None

    @pytest.mark.asyncio
    async def test_rotate_rejects_other_client(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), clock=clock)
        issued = await store.issue("session-1", client_id="client", with_refresh_token=True)
        assert await store.rotate(issued.refresh_token, client_id="intruder") is None

    @pytest.mark.asyncio
    async def test_rotate_rejects_expired_refresh_token(self, clock) -> None:
        store = BrokerTokenStore(MemoryStore(), refresh_ttl_seconds=100, clock=clock)
        issued = await store.issue("session-1", with_refresh_token=True)
        clock.advance(101)
        assert await store.rotate(issued.refresh_token) is None

    @pytest.mark.asyncio
    async def test_sweep_keeps_refreshable_tokens(self, clock) -> None:
        store = BrokerTokenStore(
            MemoryStore(), ttl_seconds=10, refresh_ttl_seconds=1000, clock=clock
        )
        plain = await store.issue("s1")
        refreshable = await store.issue("s2", with_refresh_token=True)
        clock.advance(11)

        assert await store.sweep() == 1
        assert await store.rotate(refreshable.refresh_token) is not None
        assert await store.resolve(plain.token) is None

