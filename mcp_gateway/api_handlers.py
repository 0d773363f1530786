#!/usr/bin/env python3
"""
HTTP Admin API Handlers for the MCP Gateway
Read-only pool status plus manual close and reap triggers
"""

import logging
import os
import time

import aiohttp_cors
from aiohttp import web

from .gateway import Gateway, close_message
from .pool import IdleReaper

logger = logging.getLogger(__name__)

GATEWAY_KEY = web.AppKey("gateway", Gateway)
REAPER_KEY = web.AppKey("reaper", IdleReaper)


async def health_handler(request):
    """GET /health - Fast health check"""
    return web.json_response({"status": "ok", "timestamp": time.time()})


async def status_handler(request):
    """GET /status - Configured servers and live pool entries"""
    gateway = request.app[GATEWAY_KEY]
    try:
        directory = gateway.pool.directory
        status = {
            "status": "running",
            "pid": os.getpid(),
            "servers": {name: {"kind": config.kind} for name, config in directory.items()},
            **gateway.pool.snapshot(),
        }
        return web.json_response(status)
    except Exception as e:
        logger.error(f"Status error: {e}")
        return web.json_response({"error": str(e)}, status=500)


async def close_handler(request):
    """POST /close/{name} - Evict one pooled connection"""
    gateway = request.app[GATEWAY_KEY]
    name = request.match_info['name']
    try:
        closed = await gateway.pool.evict(name)
        message = close_message(name, closed)
        return web.json_response({"success": closed, "message": message})
    except Exception as e:
        logger.error(f"Close error for {name}: {e}")
        return web.json_response({"error": str(e)}, status=500)


async def reap_handler(request):
    """POST /reap - Run one idle sweep now"""
    reaper = request.app[REAPER_KEY]
    try:
        evicted = await reaper.sweep()
        return web.json_response({"success": True, "evicted": evicted})
    except Exception as e:
        logger.error(f"Reap error: {e}")
        return web.json_response({"error": str(e)}, status=500)


def setup_routes(app):
    """Setup admin routes with CORS support"""
    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*"
        )
    })

    cors.add(app.router.add_get('/health', health_handler))
    cors.add(app.router.add_get('/status', status_handler))
    cors.add(app.router.add_post('/close/{name}', close_handler))
    cors.add(app.router.add_post('/reap', reap_handler))


def create_app(gateway: Gateway, reaper: IdleReaper) -> web.Application:
    app = web.Application()
    app[GATEWAY_KEY] = gateway
    app[REAPER_KEY] = reaper
    setup_routes(app)
    return app
