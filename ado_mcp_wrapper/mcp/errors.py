"""
Error taxonomy for the MCP wrapper.

Every domain error carries the JSON-RPC code used on the MCP/relay paths and
the HTTP status used on the REST paths, so both boundaries can convert an
exception without a lookup table of their own.
"""

from __future__ import annotations

from typing import Any

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class MCPError(Exception):
    """MCP protocol error returned by (or synthesized for) a backend."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP Error {code}: {message}")


class WrapperError(Exception):
    """Base class for domain errors raised by the client pool."""

    code: int = INTERNAL_ERROR
    http_status: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_jsonrpc_error(self) -> dict[str, Any]:
        """Serialize as a JSON-RPC error object."""
        return {"code": self.code, "message": self.message}


class MissingOrganizationError(WrapperError):
    """No Azure DevOps organization was resolved for the request."""

    http_status = 401

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Missing Azure DevOps organization. Set AZURE_DEVOPS_ORG and "
            "ensure Azure CLI is authenticated (az login)"
        )


class MissingServerUrlError(WrapperError):
    """HTTP transport was selected without a backend URL."""

    code = INVALID_PARAMS
    http_status = 400

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "MCP server URL is required when using HTTP transport. "
            "Provide header: X-MCP-Server-Url"
        )


class ClientNotReadyError(WrapperError):
    """No ready client exists for the tenant."""

    http_status = 503

    def __init__(self, message: str = "MCP client not ready"):
        super().__init__(message)


class ToolNotFoundError(WrapperError):
    """The requested tool is absent from the tenant's catalog."""

    code = INVALID_PARAMS
    http_status = 404

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found")


class TransportSpawnError(WrapperError):
    """The backend process could not be started."""

    http_status = 502


class HandshakeTimeoutError(WrapperError):
    """The backend did not answer a request in time."""

    http_status = 504


class EmptyBackendResponseError(WrapperError):
    """The backend answered a request with an empty body."""

    http_status = 502

    def __init__(self, message: str = "Empty response from server"):
        super().__init__(message)
