"""
Tenant resolution for incoming requests.

The organization always comes from explicit settings (Azure CLI handles the
actual credentials); the transport selection may be overridden per request
through headers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from ado_mcp_wrapper.config import WrapperSettings

CACHE_KEY_SEPARATOR = "|"

SERVER_URL_HEADERS = ("x-mcp-server-url", "mcp-server-url")
TRANSPORT_TYPE_HEADERS = ("x-mcp-transport-type", "mcp-transport-type")


class TransportType(str, Enum):
    """Backend transport types."""

    STDIO = "stdio"
    HTTP = "http"


@dataclass(frozen=True)
class AuthenticationContext:
    """Resolved tenant identity and transport selection."""

    organization_id: str | None
    transport_type: TransportType = TransportType.STDIO
    server_url: str | None = None

    @property
    def cache_key(self) -> str:
        """Pooling key; identical fields always yield identical keys."""
        return CACHE_KEY_SEPARATOR.join(
            [
                self.organization_id or "",
                self.transport_type.value,
                self.server_url or "",
            ]
        )


def generate_cache_key(ctx: AuthenticationContext) -> str:
    """Derive the pool cache key for a context."""
    return ctx.cache_key


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value.strip()
    return None


def resolve_authentication_context(
    headers: Mapping[str, str],
    settings: WrapperSettings,
) -> AuthenticationContext:
    """Build the context for a request from its headers and the settings.

    Unknown transport types fall back to the configured default.
    """
    transport_value = _first_header(headers, TRANSPORT_TYPE_HEADERS)
    try:
        transport = TransportType((transport_value or settings.default_transport).lower())
    except ValueError:
        transport = TransportType(settings.default_transport)

    return AuthenticationContext(
        organization_id=settings.organization or None,
        transport_type=transport,
        server_url=_first_header(headers, SERVER_URL_HEADERS),
    )
