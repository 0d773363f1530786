#!/usr/bin/env python3
"""
MCP Gateway Server
Publishes discover/dispatch/close to the upstream client over stdio and
owns the process-lifetime pieces: pool, idle reaper and admin API.
"""

import asyncio
import logging
from typing import Mapping, Optional

from aiohttp import web
from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from . import __version__
from .api_handlers import create_app
from .gateway import Gateway
from .mcp_config import GatewaySettings, ServerConfig
from .pool import ConnectionPool, Connector, IdleReaper
from .transports import open_connection

logger = logging.getLogger(__name__)


def create_server(gateway: Gateway) -> Server:
    """Low-level MCP server exposing the gateway's three tools"""
    server = Server("mcp-gateway", version=__version__)

    @server.list_tools()
    async def list_tools():
        return gateway.tool_definitions()

    async def call_tool(request: types.CallToolRequest) -> types.ServerResult:
        result = await gateway.handle_call(request.params.name, request.params.arguments)
        return types.ServerResult(result)

    # Registered directly so the handler's CallToolResult (and isError) is sent as-is
    server.request_handlers[types.CallToolRequest] = call_tool
    return server


class GatewayServer:
    """MCP Gateway process: stdio MCP server plus optional admin HTTP API"""

    def __init__(
        self,
        directory: Mapping[str, ServerConfig],
        settings: Optional[GatewaySettings] = None,
        connector: Connector = open_connection,
    ):
        self.settings = settings or GatewaySettings()
        self.pool = ConnectionPool(directory, connector=connector)
        self.reaper = IdleReaper(self.pool, interval=self.settings.reap_interval)
        self.gateway = Gateway(self.pool, invoke_timeout=self.settings.invoke_timeout)
        self.server = create_server(self.gateway)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start_admin(self):
        """Start the admin HTTP API if a port is configured"""
        if not self.settings.admin_port:
            return
        app = create_app(self.gateway, self.reaper)
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.settings.admin_host, self.settings.admin_port)
        await self.site.start()
        logger.info(f"Admin API on http://{self.settings.admin_host}:{self.settings.admin_port}")

    async def stop_admin(self):
        try:
            if self.site:
                await self.site.stop()
            if self.runner:
                await self.runner.cleanup()
        except Exception as e:
            logger.error(f"Error stopping admin API: {e}")
        finally:
            self.site = None
            self.runner = None

    async def run(self, read_stream, write_stream):
        """Serve one upstream session on the given streams until it ends"""
        self.reaper.start()
        try:
            await self.start_admin()
            logger.info(f"MCP Gateway serving {len(self.pool.directory)} servers")
            await self.server.run(read_stream, write_stream, self.server.create_initialization_options())
        finally:
            await self.shutdown()

    async def run_stdio(self):
        async with stdio_server() as (read_stream, write_stream):
            await self.run(read_stream, write_stream)

    async def shutdown(self):
        logger.info("Shutting down MCP Gateway...")
        await self.reaper.stop()
        await self.stop_admin()
        await self.pool.close_all()


async def check_servers(directory: Mapping[str, ServerConfig], connector: Connector = open_connection) -> dict:
    """Connect to every configured server once and report its tool count"""
    pool = ConnectionPool(directory, connector=connector)
    gateway = Gateway(pool)
    results = {}
    try:
        tasks = [gateway.discover(name) for name in directory]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for name, outcome in zip(directory, outcomes):
            if isinstance(outcome, BaseException):
                results[name] = {"connected": False, "error": str(outcome)}
            else:
                results[name] = {
                    "connected": True,
                    "tools_count": len(outcome["capabilities"]),
                    "resources_count": len(outcome["resources"]),
                }
    finally:
        await pool.close_all()
    return results
