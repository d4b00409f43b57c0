"""Azure DevOps MCP Wrapper.

Fronts per-organization Azure DevOps MCP servers with a pooled client layer,
a REST/JSON-RPC HTTP surface, and a stdio-to-HTTP relay for desktop MCP hosts.
"""

__version__ = "1.0.0"
