"""
Echo MCP Server - minimal downstream server for the gateway.

Exposes `ping` (returns "pong"), `echo`, two diagnostics (`pid`, `sleep`)
and one static resource, which is enough to exercise discover, dispatch,
close, crash recovery and long-running calls end to end.

Launch:
    python -m mcp_gateway.servers.echo
"""

import asyncio
import os

from fastmcp import FastMCP

mcp = FastMCP("echo")


@mcp.tool()
def ping() -> str:
    """Health check; always answers pong."""
    return "pong"


@mcp.tool()
def echo(message: str) -> str:
    """Echoes back the input message. Useful for testing."""
    return message


@mcp.tool()
def pid() -> int:
    """Process id of this server."""
    return os.getpid()


@mcp.tool()
async def sleep(seconds: float) -> str:
    """Wait `seconds` before answering."""
    await asyncio.sleep(seconds)
    return f"slept {seconds:g}s"


@mcp.resource("echo://status")
def status() -> str:
    """Static status document."""
    return "echo server ready"


if __name__ == "__main__":
    mcp.run()
