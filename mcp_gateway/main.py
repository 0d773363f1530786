#!/usr/bin/env python3
"""
MCP Gateway - Main Entry Point
Serves discover/dispatch/close over stdio in front of the registry servers
"""

import argparse
import asyncio
import logging
import signal
import sys

from .mcp_config import LOG_LEVELS, GatewaySettings, MCPConfigLoader
from .server import GatewayServer, check_servers

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str) -> None:
    """Log to stderr; stdout carries the MCP protocol"""
    if level == "silent":
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    logging.basicConfig(
        level=logging.DEBUG if level == "verbose" else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


async def serve(server: GatewayServer) -> None:
    """Run the gateway until stdin closes or a termination signal arrives"""
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # No loop signal handlers on Windows; KeyboardInterrupt still works
            pass

    try:
        await server.run_stdio()
    except asyncio.CancelledError:
        logger.info("Received shutdown signal")


async def run_check(directory) -> int:
    """Test connectivity to every configured server"""
    results = await check_servers(directory)

    print("\n=== MCP Gateway Servers ===")
    print(f"Total servers: {len(results)}")
    failed = 0
    for name, info in results.items():
        if info["connected"]:
            print(f"✅ {name} ({info['tools_count']} tools, {info['resources_count']} resources)")
        else:
            failed += 1
            print(f"❌ {name} - Error: {info['error']}")
    return 1 if failed else 0


def list_servers(directory) -> int:
    print("\n=== Configured Servers ===")
    if not directory:
        print("(none)")
    for name, config in directory.items():
        params = config.transport
        target = getattr(params, 'url', None) or " ".join([getattr(params, 'command', '')] + list(getattr(params, 'args', [])))
        print(f"  • {name} [{config.kind}] {target}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="MCP Gateway - lazy, pooled access to many MCP servers through three tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-gateway                               # Serve over stdio using ./registry.config.json
  mcp-gateway --config servers.json         # Use another registry file
  mcp-gateway --check                       # Connect to every server and report
  mcp-gateway --admin-port 5860 -v          # Serve with admin API and debug logging
        """
    )

    parser.add_argument('--config', type=str, default=None,
                        help='Path to the server registry (default: registry.config.json)')
    parser.add_argument('--settings', type=str, default=None,
                        help='Path to a TOML settings file with a [gateway] table')
    parser.add_argument('--log-level', choices=LOG_LEVELS, default=None,
                        help='Log verbosity (default: info)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Shorthand for --log-level verbose')
    parser.add_argument('--admin-host', type=str, default=None,
                        help='Host for the admin API (default: 127.0.0.1)')
    parser.add_argument('--admin-port', type=int, default=None,
                        help='Serve the admin HTTP API on this port')
    parser.add_argument('--reap-interval', type=float, default=None,
                        help='Seconds between idle sweeps (default: 30)')
    parser.add_argument('--invoke-timeout', type=float, default=None,
                        help='Seconds before a dispatched tool call times out (default: 120)')
    parser.add_argument('--check', '-t', action='store_true',
                        help='Test connectivity to all configured servers and exit')
    parser.add_argument('--list-servers', '-l', action='store_true',
                        help='List configured servers and exit')
    return parser


def resolve_settings(args) -> GatewaySettings:
    settings = GatewaySettings.load(args.settings)
    overrides = {
        'registry': args.config,
        'log_level': 'verbose' if args.verbose else args.log_level,
        'admin_host': args.admin_host,
        'admin_port': args.admin_port,
        'reap_interval': args.reap_interval,
        'invoke_timeout': args.invoke_timeout,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(settings, key, value)
    settings.validate()
    return settings


def main(argv=None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = resolve_settings(args)
    except Exception as e:
        parser.error(f"invalid settings: {e}")

    configure_logging(settings.log_level)
    loader = MCPConfigLoader(settings.registry)
    directory = loader.get_enabled_services()

    if args.list_servers:
        return list_servers(directory)

    if args.check:
        return asyncio.run(run_check(directory))

    server = GatewayServer(directory, settings)
    try:
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Gateway error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
