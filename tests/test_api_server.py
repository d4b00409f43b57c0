"""Tests for API Server."""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

from ado_mcp_wrapper.api.main import create_app, keepalive_events
from ado_mcp_wrapper.config import WrapperSettings
from ado_mcp_wrapper.mcp.pool import ClientPool
from conftest import FakeTransportFactory


@pytest.fixture
def pool(settings, factory):
    return ClientPool(settings, transport_factory=factory)


@pytest.fixture
def client(settings, pool):
    """Create test client with lifespan running."""
    with TestClient(create_app(settings, pool)) as test_client:
        yield test_client


def rpc(client, method, params=None, request_id=1, headers=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return client.post("/api/mcp", json=message, headers=headers or {})


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["clients"] == 0

    def test_request_id_header(self, client):
        response = client.get("/health")

        assert "X-Request-ID" in response.headers
        assert response.headers["X-Response-Time"].endswith("ms")

    def test_unknown_route(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json() == {"error": "Route not found"}

    def test_plain_initialize(self, client):
        response = client.post("/initialize")

        assert response.status_code == 200
        assert response.json()["protocolVersion"] == "2024-11-05"
        assert response.json()["capabilities"] == {"tools": {}}


class TestMCPEndpoint:
    """JSON-RPC over POST /api/mcp."""

    def test_initialize_warms_client(self, client, factory):
        response = rpc(client, "initialize", {"protocolVersion": "2024-11-05"})

        body = response.json()
        assert body["id"] == 1
        assert body["result"]["serverInfo"]["name"] == "azure-devops-mcp-rest-wrapper"
        assert len(factory.created) == 1

    def test_initialize_failure(self, settings):
        pool = ClientPool(settings, transport_factory=FakeTransportFactory(fail_on="initialize"))
        with TestClient(create_app(settings, pool)) as client:
            body = rpc(client, "initialize").json()

        assert body["error"]["code"] == -32603
        assert body["error"]["message"].startswith("Initialization failed")

    def test_tools_list(self, client):
        body = rpc(client, "tools/list", request_id="abc").json()

        assert body["id"] == "abc"
        assert [t["name"] for t in body["result"]["tools"]] == [
            "core_list_projects",
            "wit_get_work_item",
        ]

    def test_tools_call(self, client):
        body = rpc(client, "tools/call", {"name": "wit_get_work_item", "arguments": {"id": 1}}).json()

        assert body["result"] == {
            "content": [{"type": "text", "text": "called wit_get_work_item"}],
            "isError": False,
        }

    def test_tools_call_unknown_tool(self, client):
        body = rpc(client, "tools/call", {"name": "nope"}).json()

        assert body["error"] == {"code": -32602, "message": "Tool 'nope' not found"}

    def test_tools_call_missing_name(self, client):
        body = rpc(client, "tools/call", {"arguments": {}}).json()

        assert body["error"]["code"] == -32602

    def test_unknown_method(self, client):
        body = rpc(client, "resources/list").json()

        assert body["error"]["code"] == -32601

    def test_ping(self, client):
        assert rpc(client, "ping").json()["result"] == {}

    def test_notification_is_accepted_without_body(self, client):
        response = client.post(
            "/api/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"}
        )

        assert response.status_code == 202
        assert response.content == b""

    def test_parse_error(self, client):
        response = client.post(
            "/api/mcp", content=b"{not json", headers={"content-type": "application/json"}
        )

        body = response.json()
        assert body["id"] is None
        assert body["error"]["code"] == -32700

    def test_non_object_request(self, client):
        body = client.post("/api/mcp", json=[1, 2]).json()

        assert body["error"]["code"] == -32600

    def test_wrong_protocol_version(self, client):
        body = client.post("/api/mcp", json={"jsonrpc": "1.0", "id": 3, "method": "ping"}).json()

        assert body["id"] == 3
        assert body["error"]["code"] == -32600

    def test_http_transport_without_url(self, client, factory):
        body = rpc(client, "tools/list", headers={"X-MCP-Transport-Type": "http"}).json()

        assert body["error"]["code"] == -32602
        assert factory.created == []


class TestToolEndpoints:
    """REST tool discovery and execution."""

    def test_tools_summary(self, client):
        response = client.get("/api/tools")

        assert response.status_code == 200
        assert response.json()["toolsCount"] == 2
        assert response.json()["organization"] == "acme"

    def test_tools_list(self, client):
        data = client.get("/api/tools/list").json()

        assert [t["name"] for t in data["tools"]] == ["core_list_projects", "wit_get_work_item"]

    def test_pool_reuses_client_across_requests(self, client, factory):
        client.get("/api/tools/list")
        client.get("/api/tools")
        client.post("/api/tools/core_list_projects/call", json={"arguments": {}})

        assert len(factory.created) == 1
        assert client.get("/health").json()["clients"] == 1

    def test_call_tool(self, client):
        response = client.post("/api/tools/wit_get_work_item/call", json={"arguments": {"id": 7}})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["content"][0]["text"] == "called wit_get_work_item"

    def test_call_tool_without_body(self, client):
        response = client.post("/api/tools/core_list_projects/call")

        assert response.status_code == 200

    def test_call_unknown_tool(self, client):
        response = client.post("/api/tools/nope/call", json={"arguments": {}})

        assert response.status_code == 404
        assert response.json() == {"error": "Tool 'nope' not found"}

    def test_missing_server_url(self, client):
        response = client.get("/api/tools/list", headers={"X-MCP-Transport-Type": "http"})

        assert response.status_code == 400
        assert "X-MCP-Server-Url" in response.json()["error"]

    def test_missing_organization(self):
        settings = WrapperSettings(organization=None)
        pool = ClientPool(settings, transport_factory=FakeTransportFactory())
        with TestClient(create_app(settings, pool)) as client:
            response = client.get("/api/tools")

        assert response.status_code == 401
        assert "AZURE_DEVOPS_ORG" in response.json()["error"]

    def test_backend_failure_maps_to_bad_gateway(self, settings):
        pool = ClientPool(settings, transport_factory=FakeTransportFactory(fail_on="tools/list"))
        with TestClient(create_app(settings, pool)) as client:
            response = client.get("/api/tools/list")

        assert response.status_code == 502
        assert "tools/list failed" in response.json()["error"]

    def test_tool_call_error_from_backend(self, client, factory):
        client.get("/api/tools/list")
        for transport in factory.created:
            transport.fail_on = "tools/call"

        response = client.post("/api/tools/core_list_projects/call", json={"arguments": {}})

        assert response.status_code == 502


class TestBatchEndpoint:
    def test_batch_isolates_failures(self, client):
        response = client.post(
            "/api/tools/batch",
            json={
                "tools": [
                    {"name": "core_list_projects", "arguments": {}},
                    {"name": "missing_tool"},
                    {"name": "wit_get_work_item", "arguments": {"id": 1}},
                ]
            },
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["success"] for r in results] == [True, False, True]
        assert results[1] == {
            "toolName": "missing_tool",
            "success": False,
            "error": "Tool 'missing_tool' not found",
        }
        assert results[2]["data"]["content"][0]["text"] == "called wit_get_work_item"

    @pytest.mark.parametrize("payload", [{}, {"tools": "core_list_projects"}])
    def test_batch_requires_tools_array(self, client, payload):
        response = client.post("/api/tools/batch", json=payload)

        assert response.status_code == 400
        assert "tools" in response.json()["error"]

    def test_batch_empty_list(self, client):
        response = client.post("/api/tools/batch", json={"tools": []})

        assert response.json()["results"] == []


class TestLifespan:
    def test_shutdown_stops_pool(self, settings):
        pool = ClientPool(settings, transport_factory=FakeTransportFactory())
        pool.start = AsyncMock()
        pool.stop = AsyncMock()

        with TestClient(create_app(settings, pool)):
            pool.start.assert_awaited_once()

        pool.stop.assert_awaited_once()


class TestAppFactory:
    def test_uses_given_pool_even_when_empty(self, settings, pool):
        assert len(pool) == 0

        app = create_app(settings, pool)

        assert app.state.pool is pool

    def test_builds_default_pool(self, settings):
        app = create_app(settings)

        assert isinstance(app.state.pool, ClientPool)


class TestEventStream:
    """GET /api/mcp keep-alive stream."""

    def test_route_registered(self, settings, pool):
        app = create_app(settings, pool)

        methods = {
            method
            for route in app.routes
            if getattr(route, "path", None) == "/api/mcp"
            for method in route.methods
        }
        assert {"GET", "POST"} <= methods

    @pytest.mark.asyncio
    async def test_keepalive_pings_until_disconnect(self):
        checks = iter([False, False, True])
        is_disconnected = AsyncMock(side_effect=lambda: next(checks))

        frames = [frame async for frame in keepalive_events(is_disconnected, 0)]

        assert frames == [": ping\n\n", ": ping\n\n"]
        assert is_disconnected.await_count == 3
