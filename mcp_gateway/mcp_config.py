#!/usr/bin/env python3
"""
MCP Gateway Configuration Module
Loads the server registry (identity directory) and gateway settings
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

import toml

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "registry.config.json"
DEFAULT_CONNECT_TIMEOUT_MS = 8000
DEFAULT_IDLE_TTL_MS = 300000

LOG_LEVELS = ("silent", "info", "verbose")

_KIND_ALIASES = {
    "stdio": "stdio",
    "http": "http",
    "streamable-http": "http",
    "sse": "sse",
    "ws": "ws",
    "websocket": "ws",
}


@dataclass(frozen=True)
class StdioParams:
    """Spawn a local process and speak MCP over its stdin/stdout"""
    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    stderr_log: Optional[str] = None

    kind = "stdio"


@dataclass(frozen=True)
class RemoteParams:
    """Connect to a remote MCP endpoint over streamable HTTP or SSE"""
    url: str
    sse_only: bool = False
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return "sse" if self.sse_only else "http"


@dataclass(frozen=True)
class UnsupportedParams:
    """Declared transport with no implementation behind it"""
    kind: str
    url: Optional[str] = None


TransportParams = Union[StdioParams, RemoteParams, UnsupportedParams]


@dataclass(frozen=True)
class ServerConfig:
    """Connection parameters for one downstream identity"""
    name: str
    transport: TransportParams
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_MS / 1000
    idle_ttl: float = DEFAULT_IDLE_TTL_MS / 1000
    enabled: bool = True

    @property
    def kind(self) -> str:
        return self.transport.kind

    @classmethod
    def from_dict(cls, name: str, config: Dict[str, Any]) -> 'ServerConfig':
        """Create ServerConfig from a registry record"""
        if not isinstance(config, dict):
            raise ValueError(f"record must be an object, got {type(config).__name__}")

        kind = config.get('kind') or config.get('transport')
        url = config.get('url')
        if kind is None:
            kind = detect_kind(url)
        normalized = _KIND_ALIASES.get(str(kind).lower())
        if normalized is None:
            raise ValueError(f"unknown transport kind '{kind}'")

        if normalized == 'stdio':
            command = config.get('command')
            if not command:
                raise ValueError("stdio server requires 'command'")
            transport: TransportParams = StdioParams(
                command=command,
                args=[str(a) for a in config.get('args') or []],
                cwd=config.get('cwd'),
                env={str(k): str(v) for k, v in (config.get('env') or {}).items()},
                stderr_log=config.get('stderrLog'),
            )
        elif normalized in ('http', 'sse'):
            if not url:
                raise ValueError(f"{normalized} server requires 'url'")
            transport = RemoteParams(
                url=url,
                sse_only=normalized == 'sse' or bool(config.get('sseOnly', False)),
                headers={str(k): str(v) for k, v in (config.get('headers') or {}).items()},
            )
        else:
            transport = UnsupportedParams(kind=normalized, url=url)

        enabled = config.get('enabled', True)
        if not isinstance(enabled, bool):
            raise ValueError(f"'enabled' must be true or false, got {enabled!r}")

        return cls(
            name=name,
            transport=transport,
            connect_timeout=_millis(config.get('connectTimeoutMs'), DEFAULT_CONNECT_TIMEOUT_MS),
            idle_ttl=_millis(config.get('idleTtlMs'), DEFAULT_IDLE_TTL_MS),
            enabled=enabled,
        )


def detect_kind(url: Optional[str]) -> str:
    """Guess the transport kind from a URL (stdio when there is none)"""
    if not url:
        return 'stdio'
    parsed = urlparse(url)
    if parsed.scheme in ('ws', 'wss'):
        return 'ws'
    path = parsed.path.rstrip('/').lower()
    if path.endswith('/sse') or '/sse/' in path:
        return 'sse'
    return 'http'


def _millis(value: Any, default: int) -> float:
    if value is None:
        return default / 1000
    millis = float(value)
    if millis <= 0:
        raise ValueError(f"timeout must be positive, got {value}")
    return millis / 1000


class MCPConfigLoader:
    """Loads the registry of downstream MCP servers"""

    def __init__(self, config_path: Optional[str] = None):
        config_path = config_path or os.environ.get("MCP_GATEWAY_REGISTRY") or DEFAULT_REGISTRY
        self.config_path = Path(config_path).expanduser()
        self._config_cache: Optional[Dict[str, ServerConfig]] = None

    def load_config(self) -> Dict[str, ServerConfig]:
        """Load server configurations; any failure yields an empty registry"""
        try:
            if not self.config_path.exists():
                logger.warning(f"Registry file not found: {self.config_path} - using empty registry")
                self._config_cache = {}
                return {}

            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)

            configs: Dict[str, ServerConfig] = {}
            for name, record in self._iter_records(data):
                if name in configs:
                    logger.warning(f"Duplicate server id '{name}' ignored")
                    continue
                try:
                    config = ServerConfig.from_dict(name, record)
                    configs[name] = config
                    logger.debug(f"Loaded config for {name}: kind={config.kind}")
                except Exception as e:
                    logger.error(f"Failed to load config for {name}: {e}")
                    continue

            self._config_cache = configs
            logger.info(f"Loaded {len(configs)} server configurations from {self.config_path}")
            return configs

        except Exception as e:
            logger.error(f"Failed to load registry config: {e}")
            self._config_cache = {}
            return {}

    @staticmethod
    def _iter_records(data: Any):
        if isinstance(data, list):
            for index, record in enumerate(data):
                name = record.get('id') if isinstance(record, dict) else None
                if not name:
                    logger.error(f"Registry entry #{index} has no 'id', skipping")
                    continue
                yield str(name), record
        elif isinstance(data, dict) and isinstance(data.get('mcpServers'), dict):
            for name, record in data['mcpServers'].items():
                yield str(name), record
        else:
            raise ValueError("registry must be an array of servers or an object with 'mcpServers'")

    def get_config(self, name: str) -> Optional[ServerConfig]:
        """Get configuration for a specific server"""
        if self._config_cache is None:
            self.load_config()
        return self._config_cache.get(name)

    def get_enabled_services(self) -> Dict[str, ServerConfig]:
        """Get all enabled servers; this is the identity directory"""
        if self._config_cache is None:
            self.load_config()
        return {name: config for name, config in self._config_cache.items()
                if config.enabled}


@dataclass
class GatewaySettings:
    """Process-level settings, read from an optional TOML file"""
    log_level: str = "info"
    reap_interval: float = 30.0
    invoke_timeout: float = 120.0
    registry: Optional[str] = None
    admin_host: str = "127.0.0.1"
    admin_port: Optional[int] = None

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'GatewaySettings':
        """Load the [gateway] table from a settings file, defaults when absent"""
        settings = cls()
        if not path:
            return settings
        settings_path = Path(path).expanduser()
        if not settings_path.exists():
            logger.warning(f"Settings file not found: {settings_path} - using defaults")
            return settings

        section = toml.load(settings_path).get('gateway', {})
        for key, value in section.items():
            if not hasattr(settings, key):
                logger.warning(f"Unknown gateway setting '{key}' ignored")
                continue
            setattr(settings, key, value)
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        if self.reap_interval <= 0:
            raise ValueError("reap_interval must be positive")
        if self.invoke_timeout <= 0:
            raise ValueError("invoke_timeout must be positive")
