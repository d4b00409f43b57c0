"""
Per-tenant MCP Client Pool.

Keeps one long-lived backend connection per tenant cache key. Connections
are created lazily on first use, shared by every later request for the
same tenant, and evicted once idle for longer than the configured age.

Usage:
    pool = ClientPool(settings)
    await pool.start()                       # begins the idle sweeper

    instance = await pool.get_or_create(ctx)
    result = await pool.call_tool("wit_get_work_item", {"id": 1}, ctx)

    await pool.stop()                        # stops sweeper, closes all
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import structlog

from ado_mcp_wrapper.mcp.auth import AuthenticationContext, TransportType
from ado_mcp_wrapper.mcp.catalog import ToolCatalog, ToolDescriptor
from ado_mcp_wrapper.mcp.client import MCPTransport, ToolCallResult, create_transport
from ado_mcp_wrapper.mcp.errors import (
    ClientNotReadyError,
    MissingOrganizationError,
    MissingServerUrlError,
    ToolNotFoundError,
)

if TYPE_CHECKING:
    from ado_mcp_wrapper.config import WrapperSettings

logger = structlog.get_logger(__name__)

TransportFactory = Callable[[AuthenticationContext], MCPTransport]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClientState(str, Enum):
    """Lifecycle of a pooled client."""

    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS = {
    ClientState.CONNECTING: {ClientState.READY, ClientState.FAILED},
    ClientState.READY: {ClientState.CLOSED},
    ClientState.FAILED: set(),
    ClientState.CLOSED: set(),
}


@dataclass
class ClientInstance:
    """A backend connection owned by the pool."""

    key: str
    organization: str
    transport: MCPTransport
    state: ClientState = ClientState.CONNECTING
    catalog: ToolCatalog = field(default_factory=ToolCatalog)
    last_used_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    call_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def tools(self) -> list[ToolDescriptor]:
        return self.catalog.list_tools()

    @property
    def is_ready(self) -> bool:
        return self.state == ClientState.READY

    def transition(self, new_state: ClientState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid client state transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def touch(self, now: datetime | None = None) -> None:
        self.last_used_at = now or utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "organization": self.organization,
            "state": self.state.value,
            "tools": len(self.catalog),
            "last_used_at": self.last_used_at.isoformat(),
        }


class ClientPool:
    """
    Owns the tenant cache key -> ClientInstance mapping.

    Features:
    - Lazy creation with single-flight per key (concurrent callers join
      the creation already in progress)
    - Failed creations never leave an entry behind
    - Background idle sweeper with start/stop tied to the pool
    - Per-instance serialization of tool calls
    """

    def __init__(
        self,
        settings: WrapperSettings,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._transport_factory = transport_factory or (
            lambda ctx: create_transport(ctx, settings)
        )
        self._clock = clock
        self._clients: dict[str, ClientInstance] = {}
        self._creating: dict[str, asyncio.Task] = {}
        self._sweeper_task: asyncio.Task | None = None
        self._running = False
        self._logger = logger.bind(component="ClientPool")

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the idle sweeper."""
        if self._running:
            return
        self._running = True
        self._sweeper_task = asyncio.create_task(self._sweep_loop())
        self._logger.info(
            "Client pool started",
            cleanup_interval_minutes=self._settings.cleanup_interval_minutes,
            max_idle_minutes=self._settings.max_idle_minutes,
        )

    async def stop(self) -> None:
        """Stop the sweeper and close every client."""
        self._running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        await self.close_all()
        self._logger.info("Client pool stopped")

    async def _sweep_loop(self) -> None:
        """Background loop for periodic idle eviction."""
        interval = self._settings.cleanup_interval_minutes * 60
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self.cleanup_unused(self._settings.max_idle_minutes)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("Client cleanup error", error=str(e))

    # ─────────────────────────────────────────────────────────────────────────
    # Creation
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _validate(ctx: AuthenticationContext) -> None:
        if not ctx.organization_id:
            raise MissingOrganizationError()
        if ctx.transport_type == TransportType.HTTP and not ctx.server_url:
            raise MissingServerUrlError()

    async def get_or_create(self, ctx: AuthenticationContext) -> ClientInstance:
        """Return the ready client for `ctx`, creating it if needed."""
        self._validate(ctx)
        key = ctx.cache_key

        instance = self._clients.get(key)
        if instance is not None and instance.is_ready:
            instance.touch(self._clock())
            return instance

        task = self._creating.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._create(ctx, key))
            self._creating[key] = task
            task.add_done_callback(lambda t, key=key: self._creation_done(key, t))
        else:
            self._logger.debug("Joining in-flight client creation", key=key)

        # Shielded so one caller's cancellation does not abort the shared creation
        return await asyncio.shield(task)

    def _creation_done(self, key: str, task: asyncio.Task) -> None:
        if self._creating.get(key) is task:
            del self._creating[key]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away
            task.exception()

    async def _create(self, ctx: AuthenticationContext, key: str) -> ClientInstance:
        transport = self._transport_factory(ctx)
        instance = ClientInstance(
            key=key,
            organization=ctx.organization_id or "",
            transport=transport,
            last_used_at=self._clock(),
            created_at=self._clock(),
        )
        log = self._logger.bind(
            organization=instance.organization, transport=ctx.transport_type.value
        )
        log.info("Creating MCP client")
        start_time = time.time()

        try:
            await transport.connect()
            settle = transport.config.settle_seconds
            if settle > 0:
                await asyncio.sleep(settle)
            instance.catalog = ToolCatalog.from_list_result(await transport.list_tools())
        except BaseException as e:
            instance.transition(ClientState.FAILED)
            log.error("Failed to initialize MCP client", error=str(e) or type(e).__name__)
            try:
                await transport.close()
            except Exception as close_error:
                log.warning("Cleanup after failed creation errored", error=str(close_error))
            raise

        instance.transition(ClientState.READY)
        instance.touch(self._clock())
        self._clients[key] = instance
        log.info(
            "MCP client ready",
            tools=len(instance.catalog),
            duration_s=f"{time.time() - start_time:.2f}",
        )
        return instance

    # ─────────────────────────────────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────────────────────────────────

    def get(self, ctx: AuthenticationContext) -> ClientInstance | None:
        """Cached instance for `ctx`, without creating one."""
        return self._clients.get(ctx.cache_key)

    def is_ready(self, ctx: AuthenticationContext) -> bool:
        instance = self._clients.get(ctx.cache_key)
        return instance is not None and instance.is_ready

    def get_tools(self, ctx: AuthenticationContext) -> list[ToolDescriptor]:
        """Cached catalog for `ctx`, or an empty list. Never creates."""
        instance = self._clients.get(ctx.cache_key)
        return instance.tools if instance else []

    def get_tool(self, name: str, ctx: AuthenticationContext) -> ToolDescriptor | None:
        instance = self._clients.get(ctx.cache_key)
        return instance.catalog.get_tool(name) if instance else None

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None, ctx: AuthenticationContext
    ) -> ToolCallResult:
        """Invoke `name` on the tenant's ready client."""
        instance = self._clients.get(ctx.cache_key)
        if instance is None or not instance.is_ready:
            raise ClientNotReadyError()
        if instance.catalog.get_tool(name) is None:
            raise ToolNotFoundError(name)

        instance.touch(self._clock())
        start_time = time.time()
        async with instance.call_lock:
            result = await instance.transport.call_tool(name, arguments or {})
        instance.touch(self._clock())

        duration_ms = int((time.time() - start_time) * 1000)
        self._logger.debug(
            "Tool call completed",
            tool=name,
            organization=instance.organization,
            duration_ms=duration_ms,
        )
        return ToolCallResult.from_result(name, result, duration_ms)

    def list_clients(self) -> list[dict[str, Any]]:
        return [instance.to_dict() for instance in self._clients.values()]

    def __len__(self) -> int:
        return len(self._clients)

    # ─────────────────────────────────────────────────────────────────────────
    # Eviction
    # ─────────────────────────────────────────────────────────────────────────

    def _detach(self, instance: ClientInstance) -> bool:
        """Remove `instance` from the map and mark it closed, with no await.

        Returns False if the map no longer holds this instance.
        """
        if self._clients.get(instance.key) is not instance:
            return False
        del self._clients[instance.key]
        if instance.state == ClientState.READY:
            instance.transition(ClientState.CLOSED)
        return True

    async def cleanup_unused(self, max_age_minutes: float = 30) -> int:
        """Close and remove clients idle since before now - max_age_minutes."""
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        removed = 0

        for instance in list(self._clients.values()):
            # Re-checked per client: earlier closes may have let it be used again
            if instance.last_used_at >= cutoff or instance.call_lock.locked():
                continue
            if not self._detach(instance):
                continue
            removed += 1
            try:
                await instance.transport.close()
            except Exception as e:
                self._logger.warning(
                    "Error closing unused client", key=instance.key, error=str(e)
                )

        if removed:
            self._logger.info("Cleaned up unused MCP clients", count=removed)
        return removed

    async def close_all(self) -> None:
        """Close every client, tolerating per-client failures."""
        pending = list(self._creating.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        instances = list(self._clients.values())
        for instance in instances:
            self._detach(instance)

        for instance in instances:
            try:
                await instance.transport.close()
            except Exception as e:
                self._logger.warning("Cleanup error for client", key=instance.key, error=str(e))

        self._logger.info("All MCP clients cleaned up")
