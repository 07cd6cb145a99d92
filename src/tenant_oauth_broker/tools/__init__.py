"""Tool registry for the protected MCP endpoint.

Handlers run after the bearer gate and read the caller's tenant from
``get_tenant_context()``.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from pydantic import BaseModel

from tenant_oauth_broker.auth.context import get_tenant_context
from tenant_oauth_broker.logging_utils import get_logger
from tenant_oauth_broker.utils.time import to_iso

__all__ = [
    "ToolResult",
    "ToolSpec",
    "clear_tools",
    "get_tool_registry",
    "register_tool",
    "result_from_payload",
]


@dataclass
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, object]
    handler: Callable[[dict[str, object]], "ToolResult | Awaitable[ToolResult]"]


class ToolResult(BaseModel):
    content: list[dict[str, object]]
    structured_content: dict[str, object] | None = None


def result_from_payload(payload: dict[str, object]) -> ToolResult:
    text = json.dumps(payload, ensure_ascii=True, indent=2, default=str)
    return ToolResult(content=[{"type": "text", "text": text}], structured_content=payload)


def _connection_status(arguments: dict[str, object]) -> ToolResult:
    ctx = get_tenant_context()
    expires_at = ctx.broker_token_expires_at
    return result_from_payload(
        {
            "tenant_id": ctx.tenant_id,
            "session_id": ctx.session_id,
            "broker_token_expires_at": to_iso(expires_at) if expires_at else None,
        }
    )


connection_status_tool = ToolSpec(
    name="connection_status",
    description="Show which company this connection is authorized for.",
    input_schema={"type": "object", "properties": {}, "additionalProperties": False},
    handler=_connection_status,
)

_registry: dict[str, ToolSpec] = {connection_status_tool.name: connection_status_tool}


def register_tool(tool: ToolSpec) -> None:
    if tool.name in _registry:
        get_logger(__name__).warning("Replacing registered tool %s", tool.name)
    _registry[tool.name] = tool


def clear_tools() -> None:
    """Reset the registry to the built-in tools."""
    _registry.clear()
    _registry[connection_status_tool.name] = connection_status_tool


def get_tool_registry() -> dict[str, ToolSpec]:
    return dict(_registry)
