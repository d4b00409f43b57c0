"""HTTP surface: JSON-RPC MCP endpoint and REST tool routes."""

from ado_mcp_wrapper.api.main import create_app

__all__ = ["create_app"]
