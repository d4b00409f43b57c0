#!/usr/bin/env python
"""Azure DevOps MCP Wrapper - Main Entry Point.

Usage:
    # REST / JSON-RPC API server (default)
    python -m ado_mcp_wrapper.main --mode api --port 3000

    # stdio relay for desktop MCP hosts, forwarding to a running API server
    python -m ado_mcp_wrapper.main --mode relay --endpoint http://localhost:3000/api/mcp
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Load environment from .env.local / .env
from dotenv import load_dotenv

for env_file in (Path.cwd() / ".env.local", Path.cwd() / ".env"):
    if env_file.exists():
        load_dotenv(env_file)

import structlog

from ado_mcp_wrapper.config import WrapperSettings, load_settings


def configure_logging(stream=sys.stdout, level: int = logging.INFO) -> None:
    """Route structlog through Python logging with console rendering.

    The relay passes stderr here: its stdout carries protocol traffic.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=stream.isatty()),
            foreign_pre_chain=shared_processors,
        )
    )
    root_logger.addHandler(handler)


logger = structlog.get_logger(__name__)


async def run_api_mode(settings: WrapperSettings) -> None:
    """Run the REST / JSON-RPC API server."""
    import uvicorn

    from ado_mcp_wrapper.api.main import create_app

    logger.info(
        "Starting API server mode",
        port=settings.port,
        organization=settings.organization or "Not set",
        health=f"http://localhost:{settings.port}/health",
        mcp_endpoint=f"http://localhost:{settings.port}/api/mcp",
    )

    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


async def run_relay_mode(settings: WrapperSettings) -> None:
    """Run the stdio relay until stdin closes or a shutdown signal arrives."""
    from ado_mcp_wrapper.relay import serve_stdio

    loop = asyncio.get_running_loop()
    relay_task = asyncio.create_task(
        serve_stdio(
            settings.relay_endpoint,
            timeout=settings.relay_timeout_seconds,
            max_message_size=settings.relay_max_message_bytes,
        )
    )

    def handle_shutdown(sig: signal.Signals) -> None:
        logger.info("Shutdown signal received", signal=sig.name)
        relay_task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_shutdown, sig)

    try:
        await relay_task
    except asyncio.CancelledError:
        pass


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Azure DevOps MCP Wrapper")
    parser.add_argument(
        "--mode",
        choices=["api", "relay"],
        default="api",
        help="Run mode: api (HTTP server) or relay (stdio bridge)",
    )
    parser.add_argument("--port", type=int, default=None, help="API server port")
    parser.add_argument("--endpoint", default=None, help="Backend URL for relay mode")
    parser.add_argument("--config", default=None, help="Path to wrapper YAML config")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    configure_logging(
        stream=sys.stderr if args.mode == "relay" else sys.stdout,
        level=logging.DEBUG if args.debug else logging.INFO,
    )

    settings = load_settings(args.config)
    if args.port is not None:
        settings.port = args.port
    if args.endpoint:
        settings.relay_endpoint = args.endpoint

    logger.info("Configuration loaded", **settings.to_dict())

    try:
        if args.mode == "relay":
            asyncio.run(run_relay_mode(settings))
        else:
            asyncio.run(run_api_mode(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
