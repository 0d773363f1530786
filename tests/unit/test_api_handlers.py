"""Admin HTTP API"""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from mcp_gateway import admin_client
from mcp_gateway.api_handlers import create_app
from mcp_gateway.gateway import Gateway
from mcp_gateway.pool import ConnectionPool, IdleReaper


@pytest.fixture
async def admin(directory, connector, clock):
    pool = ConnectionPool(directory, connector=connector, clock=clock)
    gateway = Gateway(pool)
    app = create_app(gateway, IdleReaper(pool))
    async with TestClient(TestServer(app)) as client:
        yield client, pool, clock


async def test_health(admin):
    client, _, _ = admin
    response = await client.get("/health")
    assert response.status == 200
    assert (await response.json())["status"] == "ok"


async def test_status_lists_servers_and_connections(admin):
    client, pool, _ = admin
    await pool.acquire("alpha")

    data = await (await client.get("/status")).json()

    assert data["status"] == "running"
    assert data["servers"] == {"alpha": {"kind": "stdio"}, "beta": {"kind": "http"}, "gamma": {"kind": "ws"}}
    assert list(data["connections"]) == ["alpha"]
    assert data["connecting"] == []


async def test_close_endpoint(admin):
    client, pool, _ = admin
    await pool.acquire("alpha")

    first = await (await client.post("/close/alpha")).json()
    second = await (await client.post("/close/alpha")).json()

    assert first == {"success": True, "message": "Server 'alpha' closed"}
    assert second == {"success": False, "message": "Server 'alpha' not connected"}


async def test_concurrent_close_reports_consistent_outcome(admin):
    client, pool, _ = admin
    await pool.acquire("alpha")

    responses = await asyncio.gather(client.post("/close/alpha"), client.post("/close/alpha"))
    results = [await response.json() for response in responses]

    assert sorted(r["success"] for r in results) == [False, True]
    for r in results:
        expected = "closed" if r["success"] else "not connected"
        assert r["message"] == f"Server 'alpha' {expected}"

async def test_reap_endpoint(admin):
    client, pool, clock = admin
    await pool.acquire("alpha")
    await pool.acquire("beta")
    clock.advance(100)

    data = await (await client.post("/reap")).json()

    assert data == {"success": True, "evicted": ["alpha"]}
    assert "beta" in pool


async def test_status_error_is_500(admin, monkeypatch):
    client, pool, _ = admin

    def broken():
        raise RuntimeError("snapshot failed")

    monkeypatch.setattr(pool, "snapshot", broken)
    response = await client.get("/status")
    assert response.status == 500
    assert (await response.json()) == {"error": "snapshot failed"}


async def test_admin_cli_against_live_api(admin, capsys):
    client, pool, _ = admin
    host, port = client.server.host, client.server.port
    await pool.acquire("alpha")

    assert await admin_client.cli_status(host, port) == 0
    assert '"alpha"' in capsys.readouterr().out

    assert await admin_client.cli_close("alpha", host, port) == 0
    assert "✅ Server 'alpha' closed" in capsys.readouterr().out

    assert await admin_client.cli_reap(host, port) == 0
    assert "✅ Reaped 0 idle connection(s)" in capsys.readouterr().out


async def test_admin_cli_unreachable(capsys, unused_tcp_port):
    assert await admin_client.cli_status("127.0.0.1", unused_tcp_port) == 1
    assert "❌ Failed to connect" in capsys.readouterr().out
