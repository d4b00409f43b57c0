"""
MCP Transport Implementation.

Provides connectivity to Azure DevOps MCP servers over two transports:
a spawned stdio subprocess (newline-delimited JSON-RPC) or a streamable
HTTP connection. Both share one contract: connect, list_tools, call_tool,
close.

Security Note: stdio backends are spawned with asyncio.create_subprocess_exec(),
so arguments are passed directly to the executable without shell parsing.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from ado_mcp_wrapper import __version__
from ado_mcp_wrapper.mcp.auth import AuthenticationContext, TransportType
from ado_mcp_wrapper.mcp.errors import (
    INTERNAL_ERROR,
    EmptyBackendResponseError,
    HandshakeTimeoutError,
    MCPError,
    MissingOrganizationError,
    MissingServerUrlError,
    TransportSpawnError,
)

if TYPE_CHECKING:
    from ado_mcp_wrapper.config import WrapperSettings

logger = structlog.get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "azure-devops-mcp-rest-wrapper", "version": __version__}
ORGANIZATION_HEADER = "X-Azure-DevOps-Org"
SESSION_HEADER = "mcp-session-id"

# Suppress npm notices so they never interleave with the protocol stream
NPM_QUIET_ENV = {
    "NPM_CONFIG_UPDATE_NOTIFIER": "false",
    "NPM_CONFIG_FUND": "false",
    "NPM_CONFIG_AUDIT": "false",
}


@dataclass
class BackendConfig:
    """Configuration for one backend connection."""

    server_id: str
    transport: TransportType
    organization: str
    # stdio transport
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    # http transport
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # common
    timeout_seconds: float = 60.0
    settle_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (environment omitted)."""
        return {
            "server_id": self.server_id,
            "transport": self.transport.value,
            "command": self.command,
            "args": self.args,
            "url": self.url,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class ToolCallResult:
    """Result from executing a backend tool."""

    tool_name: str
    content: list[Any] = field(default_factory=list)
    is_error: bool = False
    duration_ms: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_result(
        cls, tool_name: str, result: dict[str, Any] | None, duration_ms: int = 0
    ) -> ToolCallResult:
        result = result or {}
        return cls(
            tool_name=tool_name,
            content=result.get("content") or [],
            is_error=bool(result.get("isError", False)),
            duration_ms=duration_ms,
            raw=result,
        )

    def to_dict(self) -> dict[str, Any]:
        """MCP `tools/call` result shape."""
        return {"content": self.content, "isError": self.is_error}


class MCPTransport(ABC):
    """Abstract base for backend transports."""

    def __init__(self, config: BackendConfig):
        self.config = config
        self.server_info: dict[str, Any] | None = None
        self._connected = False
        self._request_id = 0
        self._logger = logger.bind(
            server_id=config.server_id, transport=config.transport.value
        )

    @property
    def connected(self) -> bool:
        """Check if the handshake completed."""
        return self._connected

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @abstractmethod
    async def _open(self) -> None:
        """Open the underlying channel (spawn process / create HTTP client)."""

    @abstractmethod
    async def send_request(
        self, method: str, params: dict[str, Any] | None = None
    ) -> Any:
        """Send a JSON-RPC request and return its result."""

    @abstractmethod
    async def send_notification(
        self, method: str, params: dict[str, Any] | None = None
    ) -> None:
        """Send a JSON-RPC notification (no response expected)."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying channel."""

    async def connect(self) -> None:
        """Open the channel and perform the MCP handshake."""
        if self._connected:
            return

        await self._open()

        result = await self.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        await self.send_notification("notifications/initialized")

        self.server_info = (result or {}).get("serverInfo")
        self._connected = True
        self._logger.info(
            "MCP backend connected",
            server_info=self.server_info,
            protocol_version=(result or {}).get("protocolVersion"),
        )

    async def list_tools(self) -> dict[str, Any]:
        """Fetch the full tool listing, following pagination cursors."""
        tools: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            result = await self.send_request(
                "tools/list", {"cursor": cursor} if cursor else None
            ) or {}
            tools.extend(result.get("tools") or [])
            cursor = result.get("nextCursor")
            if not cursor:
                break
        return {"tools": tools}

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Invoke a tool and return the raw `tools/call` result."""
        result = await self.send_request(
            "tools/call", {"name": name, "arguments": arguments or {}}
        )
        return result or {}

    def _build_message(
        self, method: str, params: dict[str, Any] | None, request_id: int | None = None
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0"}
        if request_id is not None:
            message["id"] = request_id
        message["method"] = method
        if params:
            message["params"] = params
        return message

    @staticmethod
    def _raise_for_error(data: dict[str, Any]) -> None:
        if "error" in data and data["error"] is not None:
            error = data["error"]
            raise MCPError(
                error.get("code", INTERNAL_ERROR),
                error.get("message", "Unknown error"),
                error.get("data"),
            )


class StdioTransport(MCPTransport):
    """
    stdio transport for MCP backends.

    Spawns a subprocess and exchanges newline-delimited JSON-RPC on its
    stdin/stdout. Responses are matched to requests by id, so concurrent
    requests on one process are safe.
    """

    # Large tool listings arrive on a single line
    STREAM_LIMIT = 10 * 1024 * 1024

    def __init__(self, config: BackendConfig):
        super().__init__(config)
        self._process: asyncio.subprocess.Process | None = None
        self._pending_requests: dict[int, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    async def _open(self) -> None:
        """Spawn the backend process."""
        if not self.config.command:
            raise TransportSpawnError("No command specified for stdio transport")

        self._logger.info(
            "Starting MCP server process",
            command=self.config.command,
            args=self.config.args,
        )

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.config.env,
                limit=self.STREAM_LIMIT,
            )
        except OSError as e:
            raise TransportSpawnError(
                f"Failed to start MCP server '{self.config.command}': {e}"
            ) from e

        self._reader_task = asyncio.create_task(self._read_responses())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def close(self) -> None:
        """Stop the backend process."""
        for task in (self._reader_task, self._stderr_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._stderr_task = None

        if self._process and self._process.returncode is None:
            try:
                self._process.terminate()
                await asyncio.wait_for(self._process.wait(), timeout=5.0)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        self._process = None

        self._fail_pending(MCPError(INTERNAL_ERROR, "Transport closed"))
        self._connected = False
        self._logger.info("MCP server process stopped")

    async def _write(self, message: dict[str, Any]) -> None:
        if not self._process or not self._process.stdin:
            raise MCPError(INTERNAL_ERROR, "Not connected")
        data = (json.dumps(message) + "\n").encode()
        async with self._write_lock:
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise MCPError(INTERNAL_ERROR, f"MCP server process is gone: {e}") from e

    async def send_request(
        self, method: str, params: dict[str, Any] | None = None
    ) -> Any:
        """Send JSON-RPC request via stdin and wait for the matching response."""
        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future

        try:
            await self._write(self._build_message(method, params, request_id))
            return await asyncio.wait_for(future, timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            raise HandshakeTimeoutError(f"Request timeout: {method}")
        finally:
            self._pending_requests.pop(request_id, None)

    async def send_notification(
        self, method: str, params: dict[str, Any] | None = None
    ) -> None:
        await self._write(self._build_message(method, params))

    async def _read_responses(self) -> None:
        """Read responses from stdout until the process exits."""
        if not self._process or not self._process.stdout:
            return

        while True:
            try:
                line = await self._process.stdout.readline()
            except (asyncio.LimitOverrunError, ValueError) as e:
                self._logger.error("Oversized line from MCP server", error=str(e))
                break
            if not line:
                break

            try:
                data = json.loads(line.decode())
            except (json.JSONDecodeError, UnicodeDecodeError):
                self._logger.debug("Ignoring non-JSON output", line=line[:200])
                continue
            if not isinstance(data, dict):
                continue

            request_id = data.get("id")
            future = self._pending_requests.get(request_id) if request_id is not None else None
            if future is None:
                if "method" in data:
                    self._logger.debug("Ignoring server-initiated message", method=data["method"])
                continue
            if future.done():
                continue

            try:
                self._raise_for_error(data)
            except MCPError as e:
                future.set_exception(e)
            else:
                future.set_result(data.get("result"))

        returncode = self._process.returncode if self._process else None
        self._logger.warning("MCP server output closed", returncode=returncode)
        self._fail_pending(MCPError(INTERNAL_ERROR, "MCP server process exited"))

    async def _drain_stderr(self) -> None:
        if not self._process or not self._process.stderr:
            return
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            self._logger.debug("MCP server stderr", line=line.decode(errors="replace").rstrip())

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending_requests.values():
            if not future.done():
                future.set_exception(error)
        self._pending_requests.clear()


class HTTPTransport(MCPTransport):
    """
    Streamable HTTP transport for MCP backends.

    Each JSON-RPC message is POSTed to the server URL over one persistent
    httpx client. The server may answer with a JSON body or with an
    event stream carrying the response; the session id it assigns during
    the handshake is echoed on every later request.
    """

    def __init__(self, config: BackendConfig, client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self._client = client
        self._owns_client = client is None
        self._session_id: str | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def _open(self) -> None:
        """Initialize HTTP client."""
        if not self.config.url:
            raise MissingServerUrlError()
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                headers=self.config.headers,
            )

    async def close(self) -> None:
        """Terminate the session and close the HTTP client."""
        if self._client is not None:
            if self._session_id:
                try:
                    await self._client.delete(self.config.url, headers=self._headers())
                except httpx.HTTPError as e:
                    self._logger.debug("Session termination failed", error=str(e))
            if self._owns_client:
                await self._client.aclose()
                self._client = None
        self._session_id = None
        self._connected = False

    def _headers(self) -> dict[str, str]:
        headers = {
            **self.config.headers,
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, message: dict[str, Any]) -> Any:
        if self._client is None:
            raise MCPError(INTERNAL_ERROR, "Not connected")

        request_id = message.get("id")
        try:
            async with self._client.stream(
                "POST", self.config.url, json=message, headers=self._headers()
            ) as response:
                session_id = response.headers.get(SESSION_HEADER)
                if session_id:
                    self._session_id = session_id

                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    raise MCPError(
                        INTERNAL_ERROR,
                        f"HTTP {response.status_code} from MCP server: {body[:200]}",
                    )
                if request_id is None:
                    return None

                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    return await self._read_event_stream(response, request_id)

                body = (await response.aread()).decode()
        except httpx.TimeoutException as e:
            raise HandshakeTimeoutError(
                f"Request timeout: {message.get('method')}"
            ) from e
        except httpx.HTTPError as e:
            raise MCPError(INTERNAL_ERROR, f"HTTP transport error: {e}") from e

        if not body.strip():
            raise EmptyBackendResponseError()
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise MCPError(INTERNAL_ERROR, f"Invalid JSON from MCP server: {e}") from e

    async def _read_event_stream(self, response: httpx.Response, request_id: Any) -> Any:
        """Return the first event-stream message answering `request_id`."""
        data_lines: list[str] = []
        async for line in response.aiter_lines():
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
                continue
            if line or not data_lines:
                continue

            payload = "\n".join(data_lines)
            data_lines = []
            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                self._logger.debug("Ignoring malformed event", data=payload[:200])
                continue
            if isinstance(data, dict) and data.get("id") == request_id:
                return data

        raise EmptyBackendResponseError("Event stream closed without a response")

    async def send_request(
        self, method: str, params: dict[str, Any] | None = None
    ) -> Any:
        """Send JSON-RPC request over HTTP."""
        data = await self._post(self._build_message(method, params, self._next_id()))
        if not isinstance(data, dict):
            raise MCPError(INTERNAL_ERROR, "Unexpected response shape from MCP server")
        self._raise_for_error(data)
        return data.get("result")

    async def send_notification(
        self, method: str, params: dict[str, Any] | None = None
    ) -> None:
        await self._post(self._build_message(method, params))


def build_stdio_args(organization: str, settings: WrapperSettings) -> list[str]:
    """Argument vector for the Azure DevOps MCP server package."""
    args = ["-y", "-p", settings.stdio_package, settings.stdio_binary, organization]
    if settings.domains:
        args.extend(["-d", *settings.domains])
    return args


def build_stdio_env(organization: str, settings: WrapperSettings) -> dict[str, str]:
    """Backend environment: inherited base env, npm quieting, optional PAT."""
    env = {**settings.base_env, **NPM_QUIET_ENV}
    if settings.pat_token:
        env["AZURE_DEVOPS_TOKEN"] = settings.pat_token
        env["AZURE_DEVOPS_ORG"] = organization
    return env


def build_backend_config(ctx: AuthenticationContext, settings: WrapperSettings) -> BackendConfig:
    """Translate a tenant context into a backend configuration."""
    if not ctx.organization_id:
        raise MissingOrganizationError()

    if ctx.transport_type == TransportType.HTTP:
        if not ctx.server_url:
            raise MissingServerUrlError()
        return BackendConfig(
            server_id=ctx.cache_key,
            transport=TransportType.HTTP,
            organization=ctx.organization_id,
            url=ctx.server_url,
            headers={ORGANIZATION_HEADER: ctx.organization_id},
            timeout_seconds=settings.request_timeout_seconds,
            settle_seconds=settings.http_settle_seconds,
        )

    return BackendConfig(
        server_id=ctx.cache_key,
        transport=TransportType.STDIO,
        organization=ctx.organization_id,
        command=settings.stdio_command,
        args=build_stdio_args(ctx.organization_id, settings),
        env=build_stdio_env(ctx.organization_id, settings),
        timeout_seconds=settings.request_timeout_seconds,
        settle_seconds=settings.stdio_settle_seconds,
    )


def create_transport(ctx: AuthenticationContext, settings: WrapperSettings) -> MCPTransport:
    """Build the transport selected by the context's transport type."""
    config = build_backend_config(ctx, settings)
    if config.transport == TransportType.HTTP:
        logger.info(
            "Creating HTTP MCP transport",
            organization=config.organization,
            url=config.url,
        )
        return HTTPTransport(config)

    logger.info(
        "Creating stdio MCP transport",
        organization=config.organization,
        command=f"{config.command} {' '.join(config.args)}",
        pat_auth=bool(settings.pat_token),
    )
    return StdioTransport(config)
