"""
stdio → HTTP JSON-RPC Relay.

Bridges a line-oriented JSON-RPC stream (a desktop MCP host talking to us
over stdin/stdout) to one fixed backend HTTP endpoint. Each message is
forwarded independently; every request gets exactly one response carrying
its own id, and notifications never get one.

Stdout carries protocol traffic only. Logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, BinaryIO, Callable

import httpx
import structlog

from ado_mcp_wrapper.mcp.errors import INTERNAL_ERROR, INVALID_REQUEST, PARSE_ERROR
from ado_mcp_wrapper.relay.framing import (
    DEFAULT_MAX_MESSAGE_SIZE,
    FrameTooLargeError,
    LineAccumulator,
)

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
READ_CHUNK_SIZE = 64 * 1024

_NO_ID = object()


def jsonrpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a JSON-RPC error response."""
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def encode_line(payload: dict[str, Any]) -> str:
    """Serialize one response as a newline-terminated line."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n"


class RelayTransportError(Exception):
    """Forwarding failed before a response body was obtained."""


class RequestRelay:
    """
    Forwards JSON-RPC messages to a fixed backend endpoint.

    Usage:
        relay = RequestRelay("http://localhost:3000/api/mcp", emit=write_line)
        relay.feed(chunk)          # schedules one task per complete message
        await relay.drain()        # waits for in-flight messages
        await relay.aclose()
    """

    def __init__(
        self,
        endpoint: str,
        emit: Callable[[str], None],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._emit = emit
        self._client = client
        self._owns_client = client is None
        self._accumulator = LineAccumulator(max_message_size)
        self._inflight: set[asyncio.Task] = set()
        self._logger = logger.bind(component="RequestRelay", endpoint=endpoint)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    # ─────────────────────────────────────────────────────────────────────────
    # Input
    # ─────────────────────────────────────────────────────────────────────────

    def feed(self, chunk: bytes | str) -> list[asyncio.Task]:
        """Accept raw input and schedule every message it completes."""
        try:
            messages = self._accumulator.feed(chunk)
        except FrameTooLargeError as e:
            self._logger.warning(
                "Dropping oversized message", size=e.size, limit=e.limit, count=e.count
            )
            tasks = self._schedule(e.messages)
            for _ in range(e.count):
                self._write(jsonrpc_error(None, PARSE_ERROR, f"Invalid JSON request: {e}"))
            return tasks
        return self._schedule(messages)

    def finish(self) -> list[asyncio.Task]:
        """Schedule the unterminated remainder at end of input."""
        return self._schedule(self._accumulator.flush())

    def _schedule(self, messages: list[str]) -> list[asyncio.Task]:
        tasks = []
        for text in messages:
            task = asyncio.create_task(self.handle_message(text))
            self._inflight.add(task)
            task.add_done_callback(self._task_done)
            tasks.append(task)
        return tasks

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("Relay task failed", error=str(task.exception()))

    async def drain(self) -> None:
        """Wait until every scheduled message has been answered."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ─────────────────────────────────────────────────────────────────────────
    # Per-message processing
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_message(self, text: str) -> dict[str, Any] | None:
        """Process one message and emit its response, if any."""
        response = await self.process(text)
        if response is not None:
            self._write(response)
        return response

    async def process(self, text: str) -> dict[str, Any] | None:
        """Compute the response for one message (None for notifications)."""
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            return jsonrpc_error(None, PARSE_ERROR, f"Invalid JSON request: {e}")

        if not isinstance(message, dict):
            return jsonrpc_error(None, INVALID_REQUEST, "Invalid Request - expected a JSON object")

        request_id = message.get("id", _NO_ID)
        is_notification = request_id is _NO_ID
        log = self._logger.bind(method=message.get("method"), request_id=None if is_notification else request_id)

        try:
            body = await self._forward(message)
        except RelayTransportError as e:
            log.warning("Forwarding failed", error=str(e), notification=is_notification)
            if is_notification:
                return None
            return jsonrpc_error(request_id, INTERNAL_ERROR, str(e))

        if not body.strip():
            if is_notification:
                return None
            log.warning("Empty response for request")
            return jsonrpc_error(request_id, INTERNAL_ERROR, "Empty response from server")

        try:
            data = json.loads(body)
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
        except ValueError as e:
            if is_notification:
                return None
            log.warning("Invalid JSON from backend", error=str(e))
            return jsonrpc_error(request_id, PARSE_ERROR, f"Invalid JSON response: {e}")

        if is_notification:
            return None

        # The relay is authoritative for the id; any backend id is discarded
        response: dict[str, Any] = {"jsonrpc": data.get("jsonrpc") or "2.0", "id": request_id}
        response.update((k, v) for k, v in data.items() if k not in ("jsonrpc", "id"))
        return response

    async def _forward(self, message: dict[str, Any]) -> str:
        """POST the message and return the raw response body."""
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(self.endpoint, json=message, timeout=self.timeout),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RelayTransportError("Timeout") from e
        except httpx.HTTPError as e:
            raise RelayTransportError(str(e) or type(e).__name__) from e
        except Exception as e:
            self._logger.error("Unexpected forwarding failure", error=str(e))
            raise RelayTransportError(str(e) or type(e).__name__) from e
        return response.text

    def _write(self, payload: dict[str, Any]) -> None:
        self._emit(encode_line(payload))

    # ─────────────────────────────────────────────────────────────────────────
    # Stream pumping
    # ─────────────────────────────────────────────────────────────────────────

    async def pump(self, reader: asyncio.StreamReader) -> None:
        """Feed the relay from `reader` until EOF, then drain."""
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self.feed(chunk)
        self.finish()
        await self.drain()


def stdout_emitter(stream: BinaryIO | None = None) -> Callable[[str], None]:
    """Emitter writing response lines to stdout and flushing each one."""
    out = stream or sys.stdout.buffer

    def emit(line: str) -> None:
        out.write(line.encode("utf-8"))
        out.flush()

    return emit


async def serve_stdio(
    endpoint: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
) -> None:
    """Run the relay between this process's stdin/stdout and `endpoint`."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)

    relay = RequestRelay(
        endpoint,
        emit=stdout_emitter(),
        timeout=timeout,
        max_message_size=max_message_size,
    )
    logger.info("Relay started", endpoint=endpoint, timeout=timeout)
    try:
        await relay.pump(reader)
    finally:
        await relay.aclose()
        logger.info("Relay stopped")
