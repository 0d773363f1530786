#!/usr/bin/env python3
"""
Transport adapters for downstream MCP servers.

Each adapter turns one ServerConfig variant into a ready ProtocolClient:

  - StdioParams       -> spawn a child process, MCP over its stdin/stdout
  - RemoteParams      -> streamable HTTP, falling back to SSE once
  - UnsupportedParams -> fail immediately, no I/O

SDK transports open anyio cancel scopes that must be exited by the task
that entered them, so every session lives inside its own SessionRunner
task. Callers talk to the session from any task; only the runner enters
and exits the transport contexts.
"""

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import anyio
import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .errors import ConnectError, UnsupportedTransportError, describe, root_cause
from .mcp_config import RemoteParams, ServerConfig, StdioParams, UnsupportedParams

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0

StreamOpener = Callable[[AsyncExitStack], Awaitable[Tuple[Any, Any]]]


class ProtocolClient(ABC):
    """
    Fixed capability set the gateway needs from a downstream server.

    list_resources is optional: servers without resources return [].
    close must never raise; implementations swallow their own errors.
    """

    name: str = ""

    @abstractmethod
    async def list_tools(self) -> List[Any]:
        ...

    async def list_resources(self) -> List[Any]:
        return []

    @abstractmethod
    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def is_alive(self) -> bool:
        return True


class WatchedStream:
    """
    Read-stream proxy that reports end of stream.

    The SDK session just stops reading when the transport closes (child
    exited, server hung up); this turns that into a callback.
    """

    def __init__(self, stream, on_close: Callable[[], None]):
        self._stream = stream
        self._on_close = on_close

    def __getattr__(self, name):
        return getattr(self._stream, name)

    async def __aenter__(self):
        await self._stream.__aenter__()
        return self

    async def __aexit__(self, *exc_info):
        return await self._stream.__aexit__(*exc_info)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self._stream.__anext__()
        except StopAsyncIteration:
            self._on_close()
            raise

    async def receive(self):
        try:
            return await self._stream.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            self._on_close()
            raise


class SessionRunner:
    """
    Owns one ClientSession and the transport contexts underneath it.

    start() returns once the MCP handshake is done. stop() asks the owner
    task to unwind its contexts and waits a bounded time. terminate() is the
    hard variant: it cancels the owner task, which tears the transport down
    (for stdio this kills the child process). When the transport closes on
    its own, connection_lost() unwinds the runner the same way stop() does.
    """

    def __init__(self, name: str, open_streams: StreamOpener):
        self.name = name
        self._open_streams = open_streams
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._stop = asyncio.Event()
        self._lost = False
        self.capabilities = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def start(self) -> ClientSession:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-session:{self.name}")
        try:
            return await asyncio.shield(self._ready)
        except asyncio.CancelledError:
            # Caller gave up (connect timeout); drop the half-open transport
            self._ready.cancel()
            self.terminate()
            raise

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await self._open_streams(stack)
                read_stream = WatchedStream(read_stream, self.connection_lost)
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                result = await session.initialize()
                self.capabilities = result.capabilities
                if self._ready.done():
                    return
                self._ready.set_result(session)
                await self._stop.wait()
        except asyncio.CancelledError:
            if not self._ready.done():
                self._ready.cancel()
            raise
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(root_cause(e))
            else:
                logger.warning(f"[{self.name}] session ended: {describe(e)}")
        finally:
            logger.debug(f"[{self.name}] session runner exited")

    def connection_lost(self) -> None:
        if self._lost or self._stop.is_set():
            return
        logger.warning(f"[{self.name}] connection lost")
        self._lost = True
        self._stop.set()

    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done() and not self._lost

    async def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        if self._task is None or self._task.done():
            return
        self._stop.set()
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            logger.debug(f"[{self.name}] session did not stop within {timeout}s, cancelling")
            self._task.cancel()

    def terminate(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class SessionClient(ProtocolClient):
    """ProtocolClient backed by an initialized MCP ClientSession"""

    def __init__(self, name: str, session: ClientSession, runner: SessionRunner):
        self.name = name
        self._session = session
        self._runner = runner

    async def _request(self, awaitable: Awaitable[Any]) -> Any:
        """Run one request; fail at once if the session ends while it is pending"""
        call = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({call, self._runner.task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not call.done():
                call.cancel()

        if call not in done:
            raise ConnectionError(f"Connection to '{self.name}' closed")
        try:
            return call.result()
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream):
            self._runner.connection_lost()
            raise

    async def list_tools(self) -> List[Any]:
        result = await self._request(self._session.list_tools())
        return list(result.tools)

    async def list_resources(self) -> List[Any]:
        capabilities = self._runner.capabilities
        if capabilities is not None and capabilities.resources is None:
            return []
        result = await self._request(self._session.list_resources())
        return list(result.resources)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        return await self._request(self._session.call_tool(name, arguments))

    async def close(self) -> None:
        try:
            await self._runner.stop()
        except Exception as e:
            logger.debug(f"[{self.name}] close error (ignored): {e}")

    def is_alive(self) -> bool:
        return self._runner.is_alive()


@dataclass
class Established:
    """Result of a successful connect: the client plus a kill switch, if any"""
    client: ProtocolClient
    process: Optional[SessionRunner] = None


async def start_session(name: str, open_streams: StreamOpener) -> Tuple[SessionClient, SessionRunner]:
    """Run the MCP handshake in a dedicated runner task"""
    runner = SessionRunner(name, open_streams)
    session = await runner.start()
    return SessionClient(name, session, runner), runner


# ===== STDIO =====

def stdio_opener(params: StdioParams) -> StreamOpener:
    server = StdioServerParameters(
        command=params.command,
        args=list(params.args),
        env=dict(params.env) or None,
        cwd=params.cwd,
    )

    async def open_streams(stack: AsyncExitStack):
        errlog = sys.stderr
        if params.stderr_log:
            errlog = stack.enter_context(open(params.stderr_log, 'a', encoding='utf-8'))
        return await stack.enter_async_context(stdio_client(server, errlog=errlog))

    return open_streams


async def connect_stdio(config: ServerConfig) -> Established:
    params = config.transport
    logger.info(f"[{config.name}] Starting stdio server: {params.command} {' '.join(params.args)}")
    try:
        client, runner = await start_session(config.name, stdio_opener(params))
    except Exception as e:
        raise ConnectError(f"Failed to start '{config.name}': {describe(e)}") from e
    logger.info(f"[{config.name}] stdio session initialized")
    return Established(client=client, process=runner)


# ===== REMOTE (streamable HTTP, SSE fallback) =====

def streamable_http_opener(params: RemoteParams) -> StreamOpener:
    async def open_streams(stack: AsyncExitStack):
        read_stream, write_stream, _get_session_id = await stack.enter_async_context(
            streamablehttp_client(params.url, headers=params.headers or None)
        )
        return read_stream, write_stream

    return open_streams


def sse_opener(params: RemoteParams) -> StreamOpener:
    async def open_streams(stack: AsyncExitStack):
        return await stack.enter_async_context(sse_client(params.url, headers=params.headers or None))

    return open_streams


def is_auth_error(exc: BaseException) -> bool:
    """True when the failure is an HTTP 401/403 rather than a protocol mismatch"""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        current = root_cause(current)
        if isinstance(current, httpx.HTTPStatusError):
            return current.response.status_code in (401, 403)
        current = current.__cause__ or current.__context__
    return False


async def connect_remote(config: ServerConfig, starter=start_session) -> Established:
    params = config.transport
    if not params.sse_only:
        logger.info(f"[{config.name}] Connecting via streamable HTTP: {params.url}")
        try:
            client, _ = await starter(config.name, streamable_http_opener(params))
            return Established(client=client)
        except Exception as e:
            if is_auth_error(e):
                raise ConnectError(f"Authentication rejected by '{config.name}': {describe(e)}") from e
            logger.info(f"[{config.name}] Streamable HTTP failed ({describe(e)}), falling back to SSE")

    logger.info(f"[{config.name}] Connecting via SSE: {params.url}")
    try:
        client, _ = await starter(config.name, sse_opener(params))
    except Exception as e:
        raise ConnectError(f"Failed to connect to '{config.name}': {describe(e)}") from e
    return Established(client=client)


# ===== UNSUPPORTED =====

async def connect_unsupported(config: ServerConfig) -> Established:
    raise UnsupportedTransportError(
        f"Transport '{config.kind}' for '{config.name}' is not implemented"
    )


ADAPTERS = {
    StdioParams: connect_stdio,
    RemoteParams: connect_remote,
    UnsupportedParams: connect_unsupported,
}


async def open_connection(config: ServerConfig) -> Established:
    """Pick the adapter for the config's transport variant and connect"""
    adapter = ADAPTERS[type(config.transport)]
    return await adapter(config)
