"""
Wrapper Configuration Loader.

Loads settings from an optional YAML file and then applies environment
variable overrides. Only the entry point calls `load_settings()` with the
real process environment; everything else receives the resulting
`WrapperSettings` explicitly.

Usage:
    from ado_mcp_wrapper.config import load_settings

    settings = load_settings()
    print(settings.organization, settings.domains)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import structlog
import yaml

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "wrapper.yaml"


def parse_domains(value: str | list[str] | None) -> list[str]:
    """Split a comma-separated domain filter, dropping blanks."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [d.strip() for d in value if d and d.strip()]


@dataclass
class WrapperSettings:
    """Complete wrapper configuration."""

    organization: str | None = None
    domains: list[str] = field(default_factory=list)
    pat_token: str | None = None
    host: str = "0.0.0.0"
    port: int = 3000
    default_transport: str = "stdio"
    # stdio backend
    stdio_command: str = "npx"
    stdio_package: str = "@azure-devops/mcp"
    stdio_binary: str = "mcp-server-azuredevops"
    stdio_settle_seconds: float = 2.0
    # http backend
    http_settle_seconds: float = 1.0
    # Per-request timeout for handshake, catalog fetch and tool calls
    request_timeout_seconds: float = 60.0
    # Idle eviction
    cleanup_interval_minutes: float = 15.0
    max_idle_minutes: float = 30.0
    # stdin/stdout relay
    relay_endpoint: str = "http://localhost:3000/api/mcp"
    relay_timeout_seconds: float = 10.0
    relay_max_message_bytes: int = 10 * 1024 * 1024
    # Comment frames on an idle GET /api/mcp stream
    sse_ping_seconds: float = 30.0
    # Environment inherited by spawned backends
    base_env: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (secrets masked)."""
        return {
            "organization": self.organization,
            "domains": self.domains,
            "pat_token": "***" if self.pat_token else None,
            "port": self.port,
            "default_transport": self.default_transport,
            "relay_endpoint": self.relay_endpoint,
            "max_idle_minutes": self.max_idle_minutes,
        }


# env var -> (field, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "AZURE_DEVOPS_ORG": ("organization", str),
    "MCP_DOMAINS": ("domains", parse_domains),
    "AZURE_DEVOPS_TOKEN": ("pat_token", str),
    "HOST": ("host", str),
    "PORT": ("port", int),
    "MCP_TRANSPORT_TYPE": ("default_transport", str),
    "MCP_STDIO_COMMAND": ("stdio_command", str),
    "MCP_REQUEST_TIMEOUT": ("request_timeout_seconds", float),
    "MCP_CLEANUP_INTERVAL_MINUTES": ("cleanup_interval_minutes", float),
    "MCP_MAX_IDLE_MINUTES": ("max_idle_minutes", float),
    "MCP_PROXY_URL": ("relay_endpoint", str),
    "MCP_PROXY_TIMEOUT": ("relay_timeout_seconds", float),
}


def _load_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        logger.debug("Wrapper config file not found, using defaults", path=str(config_path))
        return {}

    logger.info("Loading wrapper configuration", path=str(config_path))
    with open(config_path) as f:
        data = yaml.safe_load(f)
    return data or {}


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WrapperSettings:
    """
    Load settings from YAML and environment.

    Args:
        config_path: Path to config file. Defaults to config/wrapper.yaml
        environ: Environment mapping. Defaults to os.environ

    Returns:
        WrapperSettings with file values and environment overrides applied
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    environ = dict(os.environ if environ is None else environ)

    data = _load_yaml(path)
    known = {f.name for f in fields(WrapperSettings)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown config keys", keys=sorted(unknown))

    values = {k: v for k, v in data.items() if k in known}
    if "domains" in values:
        values["domains"] = parse_domains(values["domains"])

    for env_name, (field_name, convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError:
            logger.warning("Invalid environment override", variable=env_name, value=raw)

    settings = replace(WrapperSettings(), **values)
    settings.base_env = environ
    return settings
