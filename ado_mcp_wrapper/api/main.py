"""FastAPI server for the Azure DevOps MCP Wrapper.

Provides:
- JSON-RPC MCP endpoint (`POST /api/mcp`) for MCP hosts
- REST endpoints for tool discovery, single and batch execution
- Health check

Usage:
    python -m ado_mcp_wrapper.main --mode api --port 3000
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from fastapi import APIRouter, Body, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ado_mcp_wrapper import __version__
from ado_mcp_wrapper.config import WrapperSettings
from ado_mcp_wrapper.mcp.auth import AuthenticationContext, resolve_authentication_context
from ado_mcp_wrapper.mcp.client import PROTOCOL_VERSION
from ado_mcp_wrapper.mcp.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ClientNotReadyError,
    MCPError,
    ToolNotFoundError,
    WrapperError,
)
from ado_mcp_wrapper.mcp.pool import ClientInstance, ClientPool

logger = structlog.get_logger(__name__)

SERVER_INFO = {"name": "azure-devops-mcp-rest-wrapper", "version": __version__}

CORS_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-API-Key",
    "X-MCP-Server-Url",
    "MCP-Server-Url",
    "X-MCP-Transport-Type",
    "MCP-Transport-Type",
]


# ═══════════════════════════════════════════════════════════════════════════════
# Request/Response Models
# ═══════════════════════════════════════════════════════════════════════════════


class ToolCallRequest(BaseModel):
    """Single tool execution payload."""

    arguments: dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class BatchItemResult(BaseModel):
    """Outcome of one call in a batch."""

    toolName: str | None
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str = __version__
    clients: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════════


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_pool(request: Request) -> ClientPool:
    return request.app.state.pool


def get_context(request: Request) -> AuthenticationContext:
    settings: WrapperSettings = request.app.state.settings
    return resolve_authentication_context(request.headers, settings)


def initialize_result() -> dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {"tools": {}},
        "serverInfo": SERVER_INFO,
    }


async def ensure_ready(pool: ClientPool, ctx: AuthenticationContext) -> ClientInstance:
    """Get or create the tenant client and confirm it is usable."""
    instance = await pool.get_or_create(ctx)
    if not pool.is_ready(ctx):
        raise ClientNotReadyError()
    return instance


def rest_error(exc: Exception) -> JSONResponse:
    """Map an exception to a REST error body."""
    if isinstance(exc, WrapperError):
        return JSONResponse(status_code=exc.http_status, content={"error": exc.message})
    if isinstance(exc, MCPError):
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": exc.message})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc) or type(exc).__name__},
    )


def rpc_result(request_id: Any, result: Any) -> JSONResponse:
    return JSONResponse({"jsonrpc": "2.0", "id": request_id, "result": result})


def rpc_error(request_id: Any, code: int, message: str) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
    )


def rpc_exception(request_id: Any, exc: Exception) -> JSONResponse:
    if isinstance(exc, WrapperError):
        return rpc_error(request_id, exc.code, exc.message)
    if isinstance(exc, MCPError):
        return rpc_error(request_id, INTERNAL_ERROR, exc.message)
    return rpc_error(request_id, INTERNAL_ERROR, str(exc) or type(exc).__name__)


async def keepalive_events(
    is_disconnected: Callable[[], Awaitable[bool]],
    interval: float,
) -> AsyncIterator[str]:
    """SSE comment frames until the client goes away. Nothing else is pushed."""
    while True:
        await asyncio.sleep(interval)
        if await is_disconnected():
            break
        yield ": ping\n\n"


# ═══════════════════════════════════════════════════════════════════════════════
# Routes
# ═══════════════════════════════════════════════════════════════════════════════

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Basic liveness check."""
    return HealthResponse(status="healthy", timestamp=_now_iso(), clients=len(get_pool(request)))


@router.post("/initialize", tags=["MCP"])
async def initialize() -> dict[str, Any]:
    """MCP initialize result for plain-HTTP callers."""
    return initialize_result()


@router.get("/api/mcp", tags=["MCP"], response_model=None)
async def mcp_event_stream(request: Request) -> StreamingResponse:
    """Keep-alive event stream for streamable HTTP MCP clients.

    Responses are always returned on the POST; this stream only carries
    periodic pings so clients that open it are not left hanging.
    """
    settings: WrapperSettings = request.app.state.settings
    logger.info("SSE connection established")
    return StreamingResponse(
        keepalive_events(request.is_disconnected, settings.sse_ping_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/api/mcp", tags=["MCP"], response_model=None)
async def mcp_endpoint(request: Request) -> Response:
    """JSON-RPC over HTTP: initialize, tools/list, tools/call."""
    try:
        message = json.loads(await request.body())
    except ValueError as e:
        return rpc_error(None, PARSE_ERROR, f"Parse error: {e}")

    if not isinstance(message, dict):
        return rpc_error(None, INVALID_REQUEST, "Invalid Request - expected a JSON object")

    if "id" not in message:
        # Notifications are acknowledged without a body
        logger.debug("Notification received", method=message.get("method"))
        return Response(status_code=status.HTTP_202_ACCEPTED)

    request_id = message["id"]
    method = message.get("method")
    params = message.get("params") or {}

    if message.get("jsonrpc") != "2.0":
        return rpc_error(request_id, INVALID_REQUEST, "Invalid Request - jsonrpc must be 2.0")

    pool = get_pool(request)
    ctx = get_context(request)

    if method == "initialize":
        try:
            # Warm the tenant's backend so the first tools/list is fast
            if ctx.organization_id:
                await pool.get_or_create(ctx)
        except Exception as e:
            logger.error("MCP initialize failed", error=str(e))
            return rpc_error(request_id, INTERNAL_ERROR, f"Initialization failed: {e}")
        return rpc_result(request_id, initialize_result())

    if method == "ping":
        return rpc_result(request_id, {})

    if method == "tools/list":
        try:
            await ensure_ready(pool, ctx)
        except Exception as e:
            logger.error("tools/list failed", error=str(e))
            return rpc_exception(request_id, e)
        return rpc_result(request_id, {"tools": [t.to_dict() for t in pool.get_tools(ctx)]})

    if method == "tools/call":
        name = params.get("name") if isinstance(params, dict) else None
        if not name:
            return rpc_error(request_id, INVALID_PARAMS, "Missing tool name")
        try:
            await ensure_ready(pool, ctx)
            if pool.get_tool(name, ctx) is None:
                raise ToolNotFoundError(name)
            result = await pool.call_tool(name, params.get("arguments") or {}, ctx)
        except Exception as e:
            logger.error("tools/call failed", tool=name, error=str(e))
            return rpc_exception(request_id, e)
        return rpc_result(request_id, result.to_dict())

    return rpc_error(request_id, METHOD_NOT_FOUND, f"Method '{method}' not found")


@router.get("/api/tools", tags=["Tools"], response_model=None)
async def tools_summary(request: Request) -> dict[str, Any] | JSONResponse:
    """Tool count for the tenant (use /api/tools/list for the full list)."""
    pool = get_pool(request)
    ctx = get_context(request)
    try:
        await ensure_ready(pool, ctx)
    except Exception as e:
        return rest_error(e)
    return {
        "toolsCount": len(pool.get_tools(ctx)),
        "organization": ctx.organization_id,
        "message": "Use /api/tools/list to get full tools list",
    }


@router.get("/api/tools/list", tags=["Tools"], response_model=None)
async def tools_list(request: Request) -> dict[str, Any] | JSONResponse:
    """Full tool list for the tenant."""
    pool = get_pool(request)
    ctx = get_context(request)
    try:
        await ensure_ready(pool, ctx)
    except Exception as e:
        return rest_error(e)
    return {
        "tools": [t.to_dict() for t in pool.get_tools(ctx)],
        "organization": ctx.organization_id,
    }


@router.post("/api/tools/batch", tags=["Tools"], response_model=None)
async def call_tools_batch(
    request: Request,
    payload: dict[str, Any] | None = Body(None),
) -> dict[str, Any] | JSONResponse:
    """Execute several tools; each failure is reported inline."""
    pool = get_pool(request)
    ctx = get_context(request)
    try:
        await ensure_ready(pool, ctx)
    except Exception as e:
        return rest_error(e)

    calls = (payload or {}).get("tools")
    if not isinstance(calls, list):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": 'Request body must contain a "tools" array'},
        )

    results: list[dict[str, Any]] = []
    for call in calls:
        name = call.get("name") if isinstance(call, dict) else None
        try:
            if not name:
                raise ToolNotFoundError(str(name))
            arguments = call.get("arguments") or {}
            result = await pool.call_tool(name, arguments, ctx)
            item = BatchItemResult(toolName=name, success=True, data=result.to_dict())
        except Exception as e:
            logger.warning("Batch tool call failed", tool=name, error=str(e))
            message = e.message if isinstance(e, (WrapperError, MCPError)) else str(e)
            item = BatchItemResult(toolName=name, success=False, error=message)
        results.append(item.model_dump(exclude_none=True))

    return {"success": True, "results": results, "organization": ctx.organization_id}


@router.post("/api/tools/{tool_name}/call", tags=["Tools"], response_model=None)
async def call_tool(
    tool_name: str,
    request: Request,
    payload: ToolCallRequest | None = None,
) -> dict[str, Any] | JSONResponse:
    """Execute a single tool."""
    pool = get_pool(request)
    ctx = get_context(request)
    try:
        await ensure_ready(pool, ctx)
        result = await pool.call_tool(tool_name, (payload.arguments if payload else {}), ctx)
    except Exception as e:
        logger.error("Tool execution failed", tool=tool_name, error=str(e))
        return rest_error(e)
    return {"success": True, "data": result.to_dict(), "organization": ctx.organization_id}


# ═══════════════════════════════════════════════════════════════════════════════
# Application Factory
# ═══════════════════════════════════════════════════════════════════════════════


def create_app(settings: WrapperSettings, pool: ClientPool | None = None) -> FastAPI:
    """Build the FastAPI application around a client pool."""
    if pool is None:
        pool = ClientPool(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "API server starting up",
            organization=settings.organization or "Not set",
            port=settings.port,
        )
        if not settings.organization:
            logger.warning("No Azure DevOps organization configured (AZURE_DEVOPS_ORG)")
        await pool.start()
        yield
        logger.info("API server shutting down")
        await pool.stop()

    app = FastAPI(
        title="Azure DevOps MCP REST Wrapper",
        description="REST and JSON-RPC access to Azure DevOps MCP tools",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pool = pool

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_HEADERS,
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request ID and timing to all requests."""
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id

        start_time = time.time()
        response: Response = await call_next(request)
        duration_ms = int((time.time() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms}ms"

        logger.info(
            "Request completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return response

    app.include_router(router)

    @app.exception_handler(WrapperError)
    async def wrapper_error_handler(request: Request, exc: WrapperError) -> JSONResponse:
        return rest_error(exc)

    @app.exception_handler(status.HTTP_404_NOT_FOUND)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Route not found"})

    return app

