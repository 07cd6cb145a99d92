import json
from unittest.mock import MagicMock

import pytest
from starlette.datastructures import State
from starlette.requests import Request

from tenant_oauth_broker.auth.context import (
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)
from tenant_oauth_broker.tools import (
    ToolResult,
    ToolSpec,
    clear_tools,
    register_tool,
    result_from_payload,
)
from tenant_oauth_broker.transport.mcp_handler import auth_error_response, handle_mcp_request


@pytest.fixture
def mock_app():
    app = MagicMock()
    app.state = State()
    return app


@pytest.fixture(autouse=True)
def _reset_tools():
    clear_tools()
    yield
    clear_tools()


@pytest.fixture
def tenant():
    token = set_tenant_context(
        TenantContext(
            tenant_id="realm-1",
            session_id="session-1",
            access_token="provider-access",
            broker_token_expires_at=1_700_003_600.0,
        )
    )
    yield
    reset_tenant_context(token)


def make_request(app, method="POST", path="/mcp", headers=None, json_body=None, body=None):
    scope = {"type": "http", "method": method, "path": path, "headers": [], "app": app}
    if headers:
        scope["headers"] = [(k.lower().encode(), v.encode()) for k, v in headers.items()]

    request = Request(scope)

    if json_body is not None or body is not None:
        raw = body if body is not None else json.dumps(json_body).encode()

        async def receive():
            return {"type": "http.request", "body": raw, "more_body": False}

        request._receive = receive

    return request


def _rpc(method, params=None, request_id=1):
    payload = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


@pytest.mark.asyncio
async def test_options_request(mock_app):
    response = await handle_mcp_request(make_request(mock_app, method="OPTIONS"))
    assert response.status_code == 204


@pytest.mark.asyncio
async def test_method_not_allowed(mock_app):
    response = await handle_mcp_request(make_request(mock_app, method="GET"))
    assert response.status_code == 405


@pytest.mark.asyncio
async def test_invalid_json(mock_app):
    response = await handle_mcp_request(make_request(mock_app, body=b"{invalid"))
    assert response.status_code == 400
    body = json.loads(response.body)
    assert body["error"]["code"] == -32700
    assert body["error"]["message"] == "Invalid JSON"


@pytest.mark.asyncio
async def test_non_object_root_returns_invalid_request(mock_app):
    response = await handle_mcp_request(make_request(mock_app, json_body="hello"))
    assert response.status_code == 400
    assert json.loads(response.body)["error"]["code"] == -32600


@pytest.mark.asyncio
async def test_initialize_negotiates_protocol(mock_app):
    request = make_request(
        mock_app, json_body=_rpc("initialize", {"protocolVersion": "2025-06-18"})
    )
    response = await handle_mcp_request(request)
    result = json.loads(response.body)["result"]
    assert result["protocolVersion"] == "2025-06-18"
    assert result["serverInfo"]["name"] == "tenant-oauth-broker"


@pytest.mark.asyncio
async def test_initialize_with_unknown_protocol_uses_latest(mock_app):
    request = make_request(mock_app, json_body=_rpc("initialize", {"protocolVersion": "1999"}))
    response = await handle_mcp_request(request)
    assert json.loads(response.body)["result"]["protocolVersion"] == "2025-11-25"


@pytest.mark.asyncio
async def test_ping(mock_app):
    response = await handle_mcp_request(make_request(mock_app, json_body=_rpc("ping")))
    assert json.loads(response.body)["result"] == {}


@pytest.mark.asyncio
async def test_notification_is_accepted_without_body(mock_app):
    payload = {"jsonrpc": "2.0", "method": "notifications/initialized"}
    response = await handle_mcp_request(make_request(mock_app, json_body=payload))
    assert response.status_code == 202


@pytest.mark.asyncio
async def test_unknown_method(mock_app):
    response = await handle_mcp_request(make_request(mock_app, json_body=_rpc("resources/list")))
    assert json.loads(response.body)["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_tools_list_includes_connection_status(mock_app):
    response = await handle_mcp_request(make_request(mock_app, json_body=_rpc("tools/list")))
    tools = json.loads(response.body)["result"]["tools"]
    assert [tool["name"] for tool in tools] == ["connection_status"]
    assert tools[0]["inputSchema"]["type"] == "object"


@pytest.mark.asyncio
async def test_connection_status_reads_tenant_context(mock_app, tenant):
    request = make_request(
        mock_app, json_body=_rpc("tools/call", {"name": "connection_status", "arguments": {}})
    )
    response = await handle_mcp_request(request)
    body = json.loads(response.body)
    structured = body["result"]["structuredContent"]
    assert structured["tenant_id"] == "realm-1"
    assert structured["session_id"] == "session-1"
    assert structured["broker_token_expires_at"].startswith("2023-11-14T")
    assert "provider-access" not in response.body.decode()


@pytest.mark.asyncio
async def test_registered_async_tool(mock_app, tenant):
    async def handler(arguments):
        return result_from_payload({"echo": arguments["value"]})

    register_tool(
        ToolSpec(
            name="echo",
            description="Echo a value",
            input_schema={"type": "object"},
            handler=handler,
        )
    )
    request = make_request(
        mock_app, json_body=_rpc("tools/call", {"name": "echo", "arguments": {"value": 3}})
    )
    response = await handle_mcp_request(request)
    assert json.loads(response.body)["result"]["structuredContent"] == {"echo": 3}


@pytest.mark.asyncio
async def test_unknown_tool(mock_app):
    request = make_request(mock_app, json_body=_rpc("tools/call", {"name": "missing"}))
    response = await handle_mcp_request(request)
    assert json.loads(response.body)["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_invalid_tool_arguments(mock_app):
    request = make_request(
        mock_app, json_body=_rpc("tools/call", {"name": "connection_status", "arguments": []})
    )
    response = await handle_mcp_request(request)
    assert json.loads(response.body)["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_tool_failure_is_internal_error(mock_app):
    def handler(arguments):
        raise RuntimeError("boom")

    register_tool(ToolSpec(name="broken", description="", input_schema={}, handler=handler))
    request = make_request(mock_app, json_body=_rpc("tools/call", {"name": "broken"}))
    response = await handle_mcp_request(request)
    error = json.loads(response.body)["error"]
    assert error["code"] == -32603
    assert "boom" not in error["message"]


@pytest.mark.asyncio
async def test_tool_returning_wrong_type(mock_app):
    register_tool(
        ToolSpec(name="bad", description="", input_schema={}, handler=lambda arguments: {})
    )
    request = make_request(mock_app, json_body=_rpc("tools/call", {"name": "bad"}))
    response = await handle_mcp_request(request)
    assert json.loads(response.body)["error"]["code"] == -32603


@pytest.mark.asyncio
async def test_batch_requests(mock_app):
    batch = [
        _rpc("ping", request_id=1),
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        "garbage",
        _rpc("ping", request_id=2),
    ]
    response = await handle_mcp_request(make_request(mock_app, json_body=batch))
    body = json.loads(response.body)
    assert [entry.get("id") for entry in body] == [1, None, 2]
    assert body[1]["error"]["code"] == -32600


@pytest.mark.asyncio
async def test_empty_batch_is_rejected(mock_app):
    response = await handle_mcp_request(make_request(mock_app, json_body=[]))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_oversized_batch_is_rejected(mock_app):
    batch = [_rpc("ping", request_id=i) for i in range(51)]
    response = await handle_mcp_request(make_request(mock_app, json_body=batch))
    assert response.status_code == 400


def test_auth_error_response(mock_app):
    request = make_request(mock_app, headers={"MCP-Protocol-Version": "2025-06-18"})
    response = auth_error_response(
        request,
        jsonrpc_code=-32003,
        error="reauthorization_required",
        message="Reconnect required",
        www_authenticate='Bearer realm="mcp", error="reauthorization_required"',
    )
    assert response.status_code == 401
    assert response.headers["mcp-protocol-version"] == "2025-06-18"
    assert "reauthorization_required" in response.headers["www-authenticate"]
    body = json.loads(response.body)
    assert body["error"]["code"] == -32003
    assert body["error"]["data"] == {"error": "reauthorization_required"}


def test_tool_result_model():
    result = ToolResult(content=[{"type": "text", "text": "hi"}])
    assert result.structured_content is None
