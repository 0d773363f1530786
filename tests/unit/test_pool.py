"""Connection pool: lazy establishment, sharing, eviction and reaping"""

import asyncio

import pytest

from mcp_gateway.errors import ConnectError, ConnectTimeoutError, UnknownServerError
from mcp_gateway.pool import ConnectionPool, IdleReaper
from mcp_gateway.transports import Established
from tests.conftest import FakeClient, FakeConnector, FakeProcess, stdio_config


async def test_acquire_connects_once_and_reuses(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)

    first = await pool.acquire("alpha")
    second = await pool.acquire("alpha")

    assert first is second
    assert connector.attempts == ["alpha"]
    assert "alpha" in pool
    assert len(pool) == 1


async def test_concurrent_first_access_connects_once(directory, clock):
    connector = FakeConnector(delay=0.05)
    pool = ConnectionPool(directory, connector=connector, clock=clock)

    results = await asyncio.gather(*(pool.acquire("alpha") for _ in range(5)))

    assert connector.attempts == ["alpha"]
    assert all(conn is results[0] for conn in results)


async def test_unknown_identity_raises_without_connecting(directory, connector):
    pool = ConnectionPool(directory, connector=connector)
    with pytest.raises(UnknownServerError, match="Unknown server: nope"):
        await pool.acquire("nope")
    assert connector.attempts == []


async def test_failed_connect_is_not_pooled_and_retries(directory, connector):
    connector.failures["alpha"] = ConnectError("boom")
    pool = ConnectionPool(directory, connector=connector)

    with pytest.raises(ConnectError, match="boom"):
        await pool.acquire("alpha")
    assert "alpha" not in pool

    del connector.failures["alpha"]
    await pool.acquire("alpha")
    assert connector.attempts == ["alpha", "alpha"]
    assert "alpha" in pool


async def test_concurrent_waiters_share_one_failure(directory):
    connector = FakeConnector(delay=0.05)
    connector.failures["alpha"] = ConnectError("refused")
    pool = ConnectionPool(directory, connector=connector)

    outcomes = await asyncio.gather(*(pool.acquire("alpha") for _ in range(3)), return_exceptions=True)

    assert connector.attempts == ["alpha"]
    assert all(isinstance(o, ConnectError) for o in outcomes)


async def test_connect_timeout_tears_down_attempt():
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def hanging(config):
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    directory = {"slow": stdio_config("slow", connect_timeout=0.05)}
    pool = ConnectionPool(directory, connector=hanging)

    with pytest.raises(ConnectTimeoutError, match="timed out after 0.05s"):
        await pool.acquire("slow")
    assert started.is_set()
    assert cancelled.is_set()
    assert "slow" not in pool


async def test_waiter_cancellation_does_not_cancel_shared_attempt(directory):
    connector = FakeConnector(delay=0.05)
    pool = ConnectionPool(directory, connector=connector)

    impatient = asyncio.create_task(pool.acquire("alpha"))
    await asyncio.sleep(0)
    patient = asyncio.create_task(pool.acquire("alpha"))
    await asyncio.sleep(0)
    impatient.cancel()

    conn = await patient
    assert conn.name == "alpha"
    assert connector.attempts == ["alpha"]


async def test_evict_closes_client_and_terminates_process(directory, connector):
    pool = ConnectionPool(directory, connector=connector)
    await pool.acquire("alpha")

    assert await pool.evict("alpha") is True
    assert await pool.evict("alpha") is False
    assert connector.clients[0].closed == 1
    assert connector.processes[0].terminated == 1
    assert "alpha" not in pool


async def test_evict_survives_teardown_errors(directory):
    class BrokenProcess(FakeProcess):
        def terminate(self):
            raise OSError("already gone")

    class BrokenClient(FakeClient):
        async def close(self):
            raise RuntimeError("close failed")

    async def connect(config):
        return Established(client=BrokenClient(config.name), process=BrokenProcess())

    pool = ConnectionPool(directory, connector=connect)
    await pool.acquire("alpha")
    assert await pool.evict("alpha") is True
    assert "alpha" not in pool


async def test_dead_connection_is_replaced(directory, connector):
    pool = ConnectionPool(directory, connector=connector)
    first = await pool.acquire("alpha")
    first.client.alive = False

    second = await pool.acquire("alpha")

    assert second is not first
    assert connector.attempts == ["alpha", "alpha"]
    assert connector.clients[0].closed == 1


async def test_evict_idle_respects_ttl(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)
    await pool.acquire("alpha")  # idle_ttl 60s
    await pool.acquire("beta")   # default 300s

    clock.advance(61)
    assert await pool.evict_idle() == ["alpha"]
    assert "beta" in pool

    clock.advance(300)
    assert await pool.evict_idle() == ["beta"]
    assert len(pool) == 0


async def test_use_resets_idle_timer(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)
    await pool.acquire("alpha")

    clock.advance(50)
    await pool.acquire("alpha")
    clock.advance(50)

    assert await pool.evict_idle() == []
    assert "alpha" in pool


async def test_close_all_empties_pool(directory, connector):
    pool = ConnectionPool(directory, connector=connector)
    await pool.acquire("alpha")
    await pool.acquire("beta")

    await pool.close_all()

    assert len(pool) == 0
    assert all(client.closed == 1 for client in connector.clients)


async def test_close_all_cancels_in_flight_connect(directory):
    connector = FakeConnector(delay=10)
    pool = ConnectionPool(directory, connector=connector)
    waiter = asyncio.create_task(pool.acquire("alpha"))
    await asyncio.sleep(0.01)

    await pool.close_all()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert "alpha" not in pool


async def test_snapshot_reports_connections(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)
    await pool.acquire("alpha")
    clock.advance(12.34)

    snapshot = pool.snapshot()

    entry = snapshot["connections"]["alpha"]
    assert entry["kind"] == "stdio"
    assert entry["idle_seconds"] == 12.3
    assert entry["idle_ttl"] == 60.0
    assert entry["has_process"] is True
    assert entry["alive"] is True
    assert snapshot["connecting"] == []


async def test_reaper_sweeps_periodically(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)
    await pool.acquire("alpha")
    clock.advance(120)

    reaper = IdleReaper(pool, interval=0.01)
    reaper.start()
    assert reaper.running
    await asyncio.sleep(0.1)
    await reaper.stop()

    assert not reaper.running
    assert "alpha" not in pool


async def test_reaper_stop_without_start(directory):
    reaper = IdleReaper(ConnectionPool(directory))
    await reaper.stop()
    assert not reaper.running


async def test_connection_in_use_is_never_reaped(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)
    conn = await pool.acquire("alpha")

    with conn.in_use():
        clock.advance(600)
        assert pool.snapshot()["connections"]["alpha"]["in_flight"] == 1
        assert await pool.evict_idle() == []

    # Finishing the request restarts the idle clock
    assert conn.in_flight == 0
    assert await pool.evict_idle() == []
    clock.advance(61)
    assert await pool.evict_idle() == ["alpha"]
