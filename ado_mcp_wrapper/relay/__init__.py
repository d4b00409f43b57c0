"""stdio-to-HTTP JSON-RPC relay for desktop MCP hosts."""

from ado_mcp_wrapper.relay.framing import FrameTooLargeError, LineAccumulator
from ado_mcp_wrapper.relay.relay import (
    RequestRelay,
    encode_line,
    jsonrpc_error,
    serve_stdio,
    stdout_emitter,
)

__all__ = [
    "LineAccumulator",
    "FrameTooLargeError",
    "RequestRelay",
    "jsonrpc_error",
    "encode_line",
    "serve_stdio",
    "stdout_emitter",
]
