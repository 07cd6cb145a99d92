"""HTTP JSON-RPC handler for the protected MCP endpoint."""

from __future__ import annotations

import inspect
import json
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tenant_oauth_broker import __version__
from tenant_oauth_broker.tools import ToolResult, get_tool_registry

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2025-03-26", "2025-06-18", "2025-11-25")
DEFAULT_PROTOCOL_VERSION = "2025-03-26"
MAX_BATCH_REQUESTS = 50

SERVER_NAME = "tenant-oauth-broker"


async def handle_mcp_request(request: Request) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=204)

    if request.method != "POST":
        return _error_response(
            None,
            "Method not allowed",
            status_code=405,
            code="method_not_allowed",
            protocol_version=_protocol_version(request),
        )

    try:
        payload = await request.json()
    except (ValueError, UnicodeDecodeError):
        return _error_response(
            None,
            "Invalid JSON",
            code=-32700,
            protocol_version=_protocol_version(request),
        )

    if isinstance(payload, list):
        return await _handle_batch(payload, request)
    if not isinstance(payload, dict):
        return _error_response(
            None,
            "Invalid JSON-RPC request",
            code=-32600,
            protocol_version=_protocol_version(request),
        )

    result = await _handle_single(payload)
    headers = {"MCP-Protocol-Version": _protocol_version(request)}
    if result is None:
        return Response(status_code=202, headers=headers)
    return _json_response(result, headers=headers)


async def _handle_batch(payloads: list[object], request: Request) -> Response:
    if not payloads or len(payloads) > MAX_BATCH_REQUESTS:
        return _error_response(
            None,
            f"Batch must hold between 1 and {MAX_BATCH_REQUESTS} requests",
            code=-32600,
            protocol_version=_protocol_version(request),
        )

    responses: list[dict[str, object]] = []
    for item in payloads:
        if not isinstance(item, dict):
            responses.append(_error_body(None, "Invalid JSON-RPC batch entry", code=-32600))
            continue
        response = await _handle_single(item)
        if response is not None:
            responses.append(response)

    headers = {"MCP-Protocol-Version": _protocol_version(request)}
    if not responses:
        return Response(status_code=202, headers=headers)
    return _json_response(responses, headers=headers)


async def _handle_single(payload: dict[str, object]) -> dict[str, object] | None:
    request_id = payload.get("id")
    method = payload.get("method")
    params = payload.get("params", {})
    params_dict = params if isinstance(params, dict) else {}

    # Notifications and client responses get no reply.
    if request_id is None:
        return None
    if method is None and ("result" in payload or "error" in payload):
        return None

    if not isinstance(method, str):
        return _error_body(request_id, "Invalid JSON-RPC method", code=-32600)

    if method == "initialize":
        requested_version = params_dict.get("protocolVersion")
        if isinstance(requested_version, str) and requested_version in SUPPORTED_PROTOCOL_VERSIONS:
            negotiated = requested_version
        else:
            negotiated = SUPPORTED_PROTOCOL_VERSIONS[-1]
        return _result_body(
            request_id,
            {
                "protocolVersion": negotiated,
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
                "capabilities": {"tools": {"listChanged": False}},
            },
        )

    if method == "ping":
        return _result_body(request_id, {})

    if method == "tools/list":
        tools = [
            {
                "name": tool.name,
                "description": tool.description,
                "inputSchema": tool.input_schema,
            }
            for tool in get_tool_registry().values()
        ]
        return _result_body(request_id, {"tools": tools})

    if method == "tools/call":
        return await _call_tool(request_id, params_dict)

    return _error_body(request_id, f"Method not found: {method[:256]}", code=-32601)


async def _call_tool(request_id: object, params: dict[str, object]) -> dict[str, object]:
    name = params.get("name")
    if not isinstance(name, str):
        return _error_body(request_id, "Invalid tool name", code=-32602)
    arguments = params.get("arguments", {})
    if not isinstance(arguments, dict):
        return _error_body(request_id, "Invalid tool arguments", code=-32602)

    tool = get_tool_registry().get(name)
    if tool is None:
        return _error_body(request_id, f"Unknown tool: {name[:256]}", code=-32602)
    try:
        result = tool.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, ToolResult):
            raise TypeError("Tool handler did not return ToolResult")
    except (KeyboardInterrupt, SystemExit):
        raise
    except Exception:
        logger.exception("Tool handler error: %s", name)
        return _error_body(request_id, "Internal tool error", code=-32603)

    return _result_body(
        request_id,
        {
            "content": result.content,
            "structuredContent": result.structured_content,
        },
    )


def _result_body(request_id: object, result: dict[str, object]) -> dict[str, object]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error_body(
    request_id: object,
    message: str,
    code: str | int = -32000,
    data: dict[str, object] | None = None,
) -> dict[str, object]:
    error: dict[str, object] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def _error_response(
    request_id: object,
    message: str,
    status_code: int = 400,
    code: str | int = -32000,
    protocol_version: str | None = None,
    data: dict[str, object] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    response_headers = {"MCP-Protocol-Version": protocol_version or DEFAULT_PROTOCOL_VERSION}
    if headers:
        response_headers.update(headers)
    return JSONResponse(
        _error_body(request_id, message, code=code, data=data),
        status_code=status_code,
        headers=response_headers,
    )


def _json_response(
    payload: object,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> Response:
    body = json.dumps(payload, default=str, ensure_ascii=False)
    return Response(
        content=body,
        status_code=status_code,
        media_type="application/json",
        headers=headers,
    )


def _protocol_version(request: Request) -> str:
    version = request.headers.get("MCP-Protocol-Version")
    if version in SUPPORTED_PROTOCOL_VERSIONS:
        return version
    return DEFAULT_PROTOCOL_VERSION


def auth_error_response(
    request: Request,
    *,
    jsonrpc_code: int,
    error: str,
    message: str,
    status_code: int = 401,
    www_authenticate: str | None = None,
) -> JSONResponse:
    """JSON-RPC error returned by the bearer gate before any dispatch."""
    return _error_response(
        None,
        message,
        status_code=status_code,
        code=jsonrpc_code,
        protocol_version=_protocol_version(request),
        data={"error": error},
        headers={"WWW-Authenticate": www_authenticate} if www_authenticate else None,
    )
