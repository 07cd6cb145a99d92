"""OAuth broker flows and request authentication.

Outer leg (MCP client, PKCE) and inner leg (third-party provider) meet in
the callback, which turns a provider consent into a tenant session.
"""

from tenant_oauth_broker.auth.context import (
    TenantContext,
    get_tenant_context,
    get_tenant_context_optional,
    reset_tenant_context,
    set_tenant_context,
)

__all__ = [
    "TenantContext",
    "get_tenant_context",
    "get_tenant_context_optional",
    "reset_tenant_context",
    "set_tenant_context",
]
