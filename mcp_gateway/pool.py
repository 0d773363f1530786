#!/usr/bin/env python3
"""
Connection Pool
Keeps at most one live downstream connection per server identity,
creates connections lazily and tears them down on evict or idle timeout.

All pool mutations happen between await points on a single event loop,
so no lock is needed; concurrent first access to the same identity is
serialized through the in-flight establishment map instead.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional

from .errors import ConnectTimeoutError, UnknownServerError
from .mcp_config import ServerConfig
from .transports import Established, ProtocolClient, open_connection

logger = logging.getLogger(__name__)

DEFAULT_REAP_INTERVAL = 30.0

Connector = Callable[[ServerConfig], Awaitable[Established]]
Clock = Callable[[], float]


@dataclass
class PooledConnection:
    """Runtime record for one established downstream connection"""
    config: ServerConfig
    client: ProtocolClient
    process: Optional[Any]
    idle_ttl: float
    last_used: float
    clock: Clock = field(default=time.monotonic, repr=False)
    in_flight: int = 0

    @property
    def name(self) -> str:
        return self.config.name

    def touch(self) -> None:
        self.last_used = self.clock()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (self.clock() if now is None else now) - self.last_used

    def is_expired(self, now: Optional[float] = None) -> bool:
        # Busy connections are never idle, however long the call runs
        return self.in_flight == 0 and self.idle_for(now) > self.idle_ttl

    @contextmanager
    def in_use(self) -> Iterator["PooledConnection"]:
        """Mark a downstream request as pending for the duration of the block"""
        self.in_flight += 1
        try:
            yield self
        finally:
            self.in_flight -= 1
            self.touch()

    async def shutdown(self) -> None:
        """Close the client and kill the process; never raises"""
        try:
            await self.client.close()
        except Exception as e:
            logger.debug(f"[{self.name}] client close error (ignored): {e}")
        if self.process is not None:
            try:
                self.process.terminate()
            except Exception as e:
                logger.debug(f"[{self.name}] process terminate error (ignored): {e}")


class ConnectionPool:
    """
    Mapping from server identity to its live PooledConnection.

    Args:
        directory: read-only identity -> ServerConfig mapping
        connector: builds a connection for a config (transport adapters by default)
        clock: monotonic time source, injectable for tests
    """

    def __init__(
        self,
        directory: Mapping[str, ServerConfig],
        connector: Connector = open_connection,
        clock: Clock = time.monotonic,
    ):
        self.directory = directory
        self._connector = connector
        self._clock = clock
        self._connections: Dict[str, PooledConnection] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, name: str) -> Optional[PooledConnection]:
        return self._connections.get(name)

    async def acquire(self, name: str) -> PooledConnection:
        """Return the live connection for `name`, establishing it on first use"""
        conn = self._connections.get(name)
        if conn is not None:
            if conn.client.is_alive():
                conn.touch()
                return conn
            logger.info(f"[{name}] pooled connection is dead, reconnecting")
            await self.evict(name)

        pending = self._pending.get(name)
        if pending is None:
            config = self.directory.get(name)
            if config is None:
                raise UnknownServerError(name)
            pending = asyncio.create_task(self._establish(config), name=f"mcp-connect:{name}")
            self._pending[name] = pending
            pending.add_done_callback(lambda task: self._establish_done(name, task))
        else:
            logger.debug(f"[{name}] waiting for in-flight connection")

        # Shielded so one impatient caller cannot cancel the shared attempt
        conn = await asyncio.shield(pending)
        conn.touch()
        return conn

    def _establish_done(self, name: str, task: asyncio.Task) -> None:
        if self._pending.get(name) is task:
            del self._pending[name]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away
            task.exception()

    async def _establish(self, config: ServerConfig) -> PooledConnection:
        started = self._clock()
        try:
            established = await asyncio.wait_for(self._connector(config), timeout=config.connect_timeout)
        except asyncio.TimeoutError:
            raise ConnectTimeoutError(
                f"Connecting to '{config.name}' timed out after {config.connect_timeout:g}s"
            ) from None

        conn = PooledConnection(
            config=config,
            client=established.client,
            process=established.process,
            idle_ttl=config.idle_ttl,
            last_used=self._clock(),
            clock=self._clock,
        )
        self._connections[config.name] = conn
        logger.info(f"[{config.name}] connected ({config.kind}) in {self._clock() - started:.2f}s")
        return conn

    async def evict(self, name: str) -> bool:
        """Remove and tear down one connection; False if it was not pooled"""
        conn = self._connections.pop(name, None)
        if conn is None:
            return False
        await conn.shutdown()
        logger.info(f"[{name}] connection closed")
        return True

    async def evict_idle(self, now: Optional[float] = None) -> List[str]:
        """Evict every connection idle longer than its budget"""
        now = self._clock() if now is None else now
        expired = [name for name, conn in self._connections.items() if conn.is_expired(now)]
        evicted = []
        for name in expired:
            conn = self._connections.get(name)
            # Touched while an earlier teardown was awaited
            if conn is None or not conn.is_expired(now):
                continue
            try:
                logger.info(f"[{name}] idle for {conn.idle_for(now):.0f}s, evicting")
                await self.evict(name)
                evicted.append(name)
            except Exception as e:
                logger.warning(f"[{name}] idle eviction failed: {e}")
        return evicted

    async def close_all(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        for name in list(self._connections):
            await self.evict(name)

    def snapshot(self) -> Dict[str, Any]:
        """Pool state for status reporting"""
        now = self._clock()
        return {
            "connections": {
                name: {
                    "kind": conn.config.kind,
                    "idle_seconds": round(conn.idle_for(now), 1),
                    "idle_ttl": conn.idle_ttl,
                    "in_flight": conn.in_flight,
                    "has_process": conn.process is not None,
                    "alive": conn.client.is_alive(),
                }
                for name, conn in self._connections.items()
            },
            "connecting": sorted(self._pending),
        }


class IdleReaper:
    """
    Background sweep evicting idle connections every `interval` seconds.

    Runs as a plain asyncio task; it never holds the process open and is
    cancelled by stop() during shutdown.
    """

    def __init__(self, pool: ConnectionPool, interval: float = DEFAULT_REAP_INTERVAL):
        self.pool = pool
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="mcp-gateway-reaper")
        logger.debug(f"Idle reaper started (every {self.interval:g}s)")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Idle sweep failed")

    async def sweep(self) -> List[str]:
        evicted = await self.pool.evict_idle()
        if evicted:
            logger.info(f"Reaped idle connections: {', '.join(evicted)}")
        return evicted

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
