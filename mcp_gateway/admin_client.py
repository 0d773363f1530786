#!/usr/bin/env python3
"""
MCP Gateway Admin Client
Pure HTTP client for the gateway's admin API: status, close and reap
"""

import argparse
import asyncio
import json

import aiohttp

DEFAULT_PORT = 5860


async def cli_status(host: str, port: int) -> int:
    """Print pool status"""
    url = f"http://{host}:{port}"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{url}/status") as response:
                if response.status == 200:
                    data = await response.json()
                    print(json.dumps(data, indent=2))
                    return 0
                print(f"❌ Status request failed: HTTP {response.status}")
    except aiohttp.ClientError as e:
        print(f"❌ Failed to connect to gateway at port {port}: {e}")
    return 1


async def cli_close(name: str, host: str, port: int) -> int:
    """Evict one server connection"""
    url = f"http://{host}:{port}"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{url}/close/{name}") as response:
                if response.status == 200:
                    data = await response.json()
                    icon = "✅" if data.get("success") else "ℹ️ "
                    print(f"{icon} {data.get('message')}")
                    return 0
                print(f"❌ Close request failed: HTTP {response.status}")
    except aiohttp.ClientError as e:
        print(f"❌ Failed to connect to gateway at port {port}: {e}")
    return 1


async def cli_reap(host: str, port: int) -> int:
    """Trigger an idle sweep"""
    url = f"http://{host}:{port}"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{url}/reap") as response:
                if response.status == 200:
                    data = await response.json()
                    evicted = data.get("evicted", [])
                    print(f"✅ Reaped {len(evicted)} idle connection(s){': ' + ', '.join(evicted) if evicted else ''}")
                    return 0
                print(f"❌ Reap request failed: HTTP {response.status}")
    except aiohttp.ClientError as e:
        print(f"❌ Failed to connect to gateway at port {port}: {e}")
    return 1


def main(argv=None) -> int:
    """Main entry point for the admin client"""
    parser = argparse.ArgumentParser(description='MCP Gateway admin client')
    parser.add_argument('--host', default='127.0.0.1', help='Admin API host (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT,
                        help=f'Admin API port (default: {DEFAULT_PORT})')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('status', help='Show configured servers and live connections')
    close_parser = subparsers.add_parser('close', help='Close a server connection')
    close_parser.add_argument('name', help='Server id')
    subparsers.add_parser('reap', help='Evict idle connections now')

    args = parser.parse_args(argv)

    if args.command == 'status':
        return asyncio.run(cli_status(args.host, args.port))
    elif args.command == 'close':
        return asyncio.run(cli_close(args.name, args.host, args.port))
    elif args.command == 'reap':
        return asyncio.run(cli_reap(args.host, args.port))
    parser.print_help()
    return 1


if __name__ == '__main__':
    raise SystemExit(main())
