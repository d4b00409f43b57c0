"""Shared fixtures: settings and an in-memory backend transport."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ado_mcp_wrapper.config import WrapperSettings
from ado_mcp_wrapper.mcp.auth import AuthenticationContext, TransportType
from ado_mcp_wrapper.mcp.client import BackendConfig, MCPTransport
from ado_mcp_wrapper.mcp.errors import MCPError

DEFAULT_TOOLS = [
    {
        "name": "core_list_projects",
        "description": "List projects in the organization",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "wit_get_work_item",
        "description": "Get a work item by id",
        "inputSchema": {
            "type": "object",
            "properties": {"id": {"type": "number"}},
            "required": ["id"],
        },
    },
]


class FakeTransport(MCPTransport):
    """Backend double answering initialize, tools/list and tools/call."""

    def __init__(
        self,
        ctx: AuthenticationContext,
        tools: list[dict[str, Any]] | None = None,
        fail_on: str | None = None,
        gate: asyncio.Event | None = None,
        close_error: Exception | None = None,
        close_gate: asyncio.Event | None = None,
    ):
        super().__init__(
            BackendConfig(
                server_id=ctx.cache_key,
                transport=ctx.transport_type,
                organization=ctx.organization_id or "",
                url=ctx.server_url,
                settle_seconds=0,
            )
        )
        self.tools = DEFAULT_TOOLS if tools is None else tools
        self.fail_on = fail_on
        self.gate = gate
        self.close_error = close_error
        self.close_gate = close_gate
        self.open_count = 0
        self.close_count = 0
        self.requests: list[tuple[str, dict[str, Any] | None]] = []
        self.notifications: list[str] = []

    async def _open(self) -> None:
        self.open_count += 1
        if self.gate is not None:
            await self.gate.wait()

    async def send_request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        self.requests.append((method, params))
        if method == self.fail_on:
            raise MCPError(-32603, f"{method} failed")
        if method == "initialize":
            return {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-ado", "version": "0.0.1"},
            }
        if method == "tools/list":
            return {"tools": self.tools}
        if method == "tools/call":
            return {
                "content": [{"type": "text", "text": f"called {params['name']}"}],
                "isError": False,
            }
        raise MCPError(-32601, f"Method '{method}' not found")

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        self.notifications.append(method)

    async def close(self) -> None:
        self.close_count += 1
        self._connected = False
        if self.close_gate is not None:
            await self.close_gate.wait()
        if self.close_error is not None:
            raise self.close_error


class FakeTransportFactory:
    """Records every transport it builds."""

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.created: list[FakeTransport] = []

    def __call__(self, ctx: AuthenticationContext) -> FakeTransport:
        transport = FakeTransport(ctx, **self.kwargs)
        self.created.append(transport)
        return transport


@pytest.fixture
def settings() -> WrapperSettings:
    return WrapperSettings(
        organization="acme",
        stdio_settle_seconds=0,
        http_settle_seconds=0,
        request_timeout_seconds=5,
        base_env={"PATH": "/usr/bin"},
    )


@pytest.fixture
def stdio_ctx() -> AuthenticationContext:
    return AuthenticationContext(organization_id="acme", transport_type=TransportType.STDIO)


@pytest.fixture
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()
