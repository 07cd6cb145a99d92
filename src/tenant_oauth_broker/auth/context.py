"""Request-scoped tenant context for protected calls."""

from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable request-scoped context handed to tool handlers.

    SECURITY: access_token is the tenant's third-party token and MUST NEVER be logged.
    """

    tenant_id: str
    session_id: str
    access_token: str = field(repr=False)
    broker_token_expires_at: float | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        """Safe repr that never includes the access token."""
        return (
            f"TenantContext("
            f"tenant_id={self.tenant_id!r}, "
            f"session_id={self.session_id!r}, "
            f"request_id={self.request_id!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


_tenant_context: ContextVar[TenantContext | None] = ContextVar(
    "tenant_context",
    default=None,
)


def set_tenant_context(ctx: TenantContext) -> Token[TenantContext | None]:
    """Set context and return reset token."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: Token[TenantContext | None]) -> None:
    """Reset context using token from set_tenant_context()."""
    _tenant_context.reset(token)


def get_tenant_context() -> TenantContext:
    """Get context or raise RuntimeError."""
    ctx = _tenant_context.get()
    if ctx is None:
        raise RuntimeError("No tenant context set")
    return ctx


def get_tenant_context_optional() -> TenantContext | None:
    return _tenant_context.get()
