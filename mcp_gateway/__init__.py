"""
MCP Gateway - lazy, pooled access to many MCP servers through three tools.

The upstream client sees discover, dispatch and close; downstream servers
(stdio processes or remote HTTP/SSE endpoints) are connected on first use,
shared per identity, and reaped when idle.
"""

__version__ = "1.0.0"

from .errors import (
    ConnectError,
    ConnectTimeoutError,
    DiscoveryError,
    GatewayError,
    InvocationError,
    InvocationTimeoutError,
    UnknownServerError,
    UnsupportedTransportError,
)
from .gateway import Gateway
from .mcp_config import GatewaySettings, MCPConfigLoader, ServerConfig
from .pool import ConnectionPool, IdleReaper, PooledConnection

__all__ = [
    "ConnectError",
    "ConnectTimeoutError",
    "ConnectionPool",
    "DiscoveryError",
    "Gateway",
    "GatewayError",
    "GatewaySettings",
    "IdleReaper",
    "InvocationError",
    "InvocationTimeoutError",
    "MCPConfigLoader",
    "PooledConnection",
    "ServerConfig",
    "UnknownServerError",
    "UnsupportedTransportError",
    "__version__",
]
