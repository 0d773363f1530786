"""Shared fakes for gateway tests: a scriptable ProtocolClient and a manual clock."""

import asyncio
import sys
from pathlib import Path

import pytest
from mcp import types

from mcp_gateway.mcp_config import RemoteParams, ServerConfig, StdioParams, UnsupportedParams
from mcp_gateway.transports import Established, ProtocolClient

REPO_ROOT = Path(__file__).resolve().parent.parent


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    def __init__(self):
        self.terminated = 0

    def terminate(self):
        self.terminated += 1


class FakeClient(ProtocolClient):
    """In-memory downstream server with one `ping` tool unless told otherwise"""

    def __init__(self, name="fake", tools=None, resources=None, results=None):
        self.name = name
        self.tools = tools if tools is not None else [
            types.Tool(name="ping", description="Health check", inputSchema={"type": "object"})
        ]
        self.resources = resources if resources is not None else []
        self.results = results or {}
        self.calls = []
        self.closed = 0
        self.alive = True
        self.list_tools_error = None
        self.list_resources_error = None
        self.call_delay = 0.0

    async def list_tools(self):
        if self.list_tools_error:
            raise self.list_tools_error
        return self.tools

    async def list_resources(self):
        if self.list_resources_error:
            raise self.list_resources_error
        return self.resources

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        result = self.results.get(name)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return types.CallToolResult(content=[types.TextContent(type="text", text="pong")])
        return result

    async def close(self):
        self.closed += 1

    def is_alive(self):
        return self.alive


class FakeConnector:
    """Connector that hands out FakeClients and records every attempt"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.attempts = []
        self.clients = []
        self.processes = []
        self.failures = {}

    async def __call__(self, config: ServerConfig) -> Established:
        self.attempts.append(config.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(config.name)
        if failure is not None:
            raise failure
        client = FakeClient(config.name)
        process = FakeProcess()
        self.clients.append(client)
        self.processes.append(process)
        return Established(client=client, process=process)


def stdio_config(name="echo", **overrides) -> ServerConfig:
    params = StdioParams(command=sys.executable, args=["-m", "mcp_gateway.servers.echo"], cwd=str(REPO_ROOT))
    return ServerConfig(name=name, transport=params, **overrides)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def directory():
    return {
        "alpha": stdio_config("alpha", idle_ttl=60.0),
        "beta": ServerConfig(name="beta", transport=RemoteParams(url="https://example.test/mcp")),
        "gamma": ServerConfig(name="gamma", transport=UnsupportedParams(kind="ws", url="ws://example.test")),
    }
