"""
MCP Client Layer.

Architecture:
    ClientPool -> ClientInstance -> MCPTransport (stdio / streamable HTTP)
                                 -> ToolCatalog

Components:
    - AuthenticationContext: tenant identity + transport selection
    - MCPTransport: StdioTransport and HTTPTransport sharing one contract
    - ToolCatalog: tools advertised by a backend, fetched once per connection
    - ClientPool: per-tenant cache with single-flight creation and idle eviction
"""

from ado_mcp_wrapper.mcp.auth import (
    AuthenticationContext,
    TransportType,
    generate_cache_key,
    resolve_authentication_context,
)
from ado_mcp_wrapper.mcp.catalog import ToolCatalog, ToolDescriptor
from ado_mcp_wrapper.mcp.client import (
    BackendConfig,
    HTTPTransport,
    MCPTransport,
    StdioTransport,
    ToolCallResult,
    create_transport,
)
from ado_mcp_wrapper.mcp.errors import (
    ClientNotReadyError,
    EmptyBackendResponseError,
    HandshakeTimeoutError,
    MCPError,
    MissingOrganizationError,
    MissingServerUrlError,
    ToolNotFoundError,
    TransportSpawnError,
    WrapperError,
)
from ado_mcp_wrapper.mcp.pool import ClientInstance, ClientPool, ClientState

__all__ = [
    # Auth
    "AuthenticationContext",
    "TransportType",
    "generate_cache_key",
    "resolve_authentication_context",
    # Catalog
    "ToolCatalog",
    "ToolDescriptor",
    # Transports
    "BackendConfig",
    "MCPTransport",
    "StdioTransport",
    "HTTPTransport",
    "ToolCallResult",
    "create_transport",
    # Pool
    "ClientPool",
    "ClientInstance",
    "ClientState",
    # Errors
    "WrapperError",
    "MCPError",
    "MissingOrganizationError",
    "MissingServerUrlError",
    "ClientNotReadyError",
    "ToolNotFoundError",
    "TransportSpawnError",
    "HandshakeTimeoutError",
    "EmptyBackendResponseError",
]
