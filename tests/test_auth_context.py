from __future__ import annotations

import pytest

from tenant_oauth_broker.auth import (
    TenantContext,
    get_tenant_context,
    get_tenant_context_optional,
    reset_tenant_context,
    set_tenant_context,
)


def test_context_repr_is_safe() -> None:
    ctx = TenantContext(tenant_id="realm-1", session_id="s1", access_token="provider-secret")
    rendered = repr(ctx)
    assert "realm-1" in rendered
    assert "provider-secret" not in rendered
    assert str(ctx) == rendered


def test_context_var_lifecycle() -> None:
    ctx = TenantContext(tenant_id="realm-1", session_id="s1", access_token="token")
    token = set_tenant_context(ctx)

    assert get_tenant_context().tenant_id == "realm-1"
    assert get_tenant_context_optional() is ctx

    reset_tenant_context(token)
    assert get_tenant_context_optional() is None


def test_get_context_without_value_raises() -> None:
    with pytest.raises(RuntimeError, match="No tenant context"):
        get_tenant_context()


def test_each_context_gets_request_id() -> None:
    first = TenantContext(tenant_id="r", session_id="s", access_token="t")
    second = TenantContext(tenant_id="r", session_id="s", access_token="t")
    assert first.request_id != second.request_id
