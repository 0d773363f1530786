#!/usr/bin/env python3
"""
Dispatch Engine
Implements the three gateway operations (discover, dispatch, close) on top
of the connection pool, and the boundary that turns every failure into an
isError tool result instead of an exception.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from mcp import types
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import DiscoveryError, GatewayError, InvocationError, InvocationTimeoutError, describe
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

INVOKE_TIMEOUT = 120.0


class DiscoverInput(BaseModel):
    identity: str = Field(..., min_length=1)


class DispatchInput(BaseModel):
    identity: str = Field(..., min_length=1)
    capability: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('arguments', mode='before')
    @classmethod
    def _null_arguments(cls, value):
        return {} if value is None else value


class CloseInput(BaseModel):
    identity: str = Field(..., min_length=1)


def to_jsonable(item: Any) -> Any:
    """SDK models to plain JSON data; anything else passes through"""
    if hasattr(item, 'model_dump'):
        return item.model_dump(mode='json', by_alias=True, exclude_none=True)
    return item


def text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type='text', text=text)],
        isError=is_error,
    )


def error_result(message: str) -> types.CallToolResult:
    return text_result(f"Error: {message}", is_error=True)


def close_message(identity: str, closed: bool) -> str:
    if closed:
        return f"Server '{identity}' closed"
    return f"Server '{identity}' not connected"


def normalize_tool_result(result: Any) -> types.CallToolResult:
    """
    Pass downstream content through verbatim when it is a content array;
    otherwise wrap the whole raw response as one text item.
    """
    raw = to_jsonable(result)
    content = raw.get('content') if isinstance(raw, dict) else None
    if isinstance(content, list):
        payload = {"content": content, "isError": bool(raw.get('isError') or False)}
        if raw.get('structuredContent') is not None:
            payload["structuredContent"] = raw['structuredContent']
        try:
            return types.CallToolResult.model_validate(payload)
        except ValidationError:
            logger.debug("Downstream content items are not valid MCP content, wrapping raw response")
    return text_result(json.dumps(raw, indent=2, default=str))


class Gateway:
    """
    The gateway's public surface: discover, dispatch and close.

    discover/dispatch/close raise GatewayError subclasses; handle_call is
    the upstream boundary and never raises.
    """

    def __init__(self, pool: ConnectionPool, invoke_timeout: float = INVOKE_TIMEOUT):
        self.pool = pool
        self.invoke_timeout = invoke_timeout

    async def discover(self, identity: str) -> Dict[str, Any]:
        conn = await self.pool.acquire(identity)

        with conn.in_use():
            try:
                tools = await conn.client.list_tools()
            except Exception as e:
                logger.error(f"[{identity}] list_tools failed: {describe(e)}")
                raise DiscoveryError(f"Failed to list tools of '{identity}': {describe(e)}") from e
            logger.debug(f"[{identity}] list_tools returned {len(tools)} tools")

            try:
                resources = await conn.client.list_resources()
            except Exception as e:
                logger.info(f"[{identity}] list_resources failed, reporting none: {describe(e)}")
                resources = []

        return {
            "identity": identity,
            "capabilities": [to_jsonable(tool) for tool in tools],
            "resources": [to_jsonable(resource) for resource in resources],
        }

    async def dispatch(
        self,
        identity: str,
        capability: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> types.CallToolResult:
        conn = await self.pool.acquire(identity)
        arguments = arguments or {}

        logger.debug(f"[{identity}] calling {capability}")
        with conn.in_use():
            try:
                result = await asyncio.wait_for(
                    conn.client.call_tool(capability, arguments),
                    timeout=self.invoke_timeout,
                )
            except asyncio.TimeoutError:
                raise InvocationTimeoutError(
                    f"Tool '{capability}' on '{identity}' timed out after {self.invoke_timeout:g}s"
                ) from None
            except GatewayError:
                raise
            except Exception as e:
                raise InvocationError(f"Tool '{capability}' on '{identity}' failed: {describe(e)}") from e

        return normalize_tool_result(result)

    async def close(self, identity: str) -> str:
        return close_message(identity, await self.pool.evict(identity))

    # ===== UPSTREAM BOUNDARY =====

    def tool_definitions(self) -> List[types.Tool]:
        servers = ", ".join(sorted(self.pool.directory)) or "(none configured)"
        return [
            types.Tool(
                name="discover",
                description=(
                    "Return metadata, tools and resources of a target MCP server without "
                    "registering them in the client. Call this first to see what tools "
                    "are available on a server."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "identity": {
                            "type": "string",
                            "description": f"The ID of the target MCP server. Available servers: {servers}",
                        },
                    },
                    "required": ["identity"],
                },
            ),
            types.Tool(
                name="dispatch",
                description=(
                    "Call a tool on a target MCP server. Use discover first to see "
                    "available tools and their schemas."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "identity": {"type": "string", "description": "The ID of the target MCP server"},
                        "capability": {"type": "string", "description": "The name of the tool to invoke"},
                        "arguments": {
                            "type": "object",
                            "description": "Arguments to pass to the tool (as a JSON object)",
                        },
                    },
                    "required": ["identity", "capability"],
                },
            ),
            types.Tool(
                name="close",
                description="Close and evict a target MCP server connection from the gateway cache.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "identity": {"type": "string", "description": "The ID of the target MCP server to close"},
                    },
                    "required": ["identity"],
                },
            ),
        ]

    async def handle_call(self, name: str, arguments: Optional[Dict[str, Any]]) -> types.CallToolResult:
        """Run one upstream tool call; failures become isError results"""
        arguments = arguments or {}
        try:
            if name == "discover":
                request = DiscoverInput.model_validate(arguments)
                logger.info(f"discover {request.identity}")
                payload = await self.discover(request.identity)
                return text_result(json.dumps(payload, indent=2))
            elif name == "dispatch":
                request = DispatchInput.model_validate(arguments)
                logger.info(f"dispatch {request.identity}/{request.capability}")
                return await self.dispatch(request.identity, request.capability, request.arguments)
            elif name == "close":
                request = CloseInput.model_validate(arguments)
                logger.info(f"close {request.identity}")
                return text_result(await self.close(request.identity))
            else:
                raise GatewayError(f"Unknown tool: {name}")
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
            )
            return error_result(f"Invalid arguments for '{name}': {details}")
        except GatewayError as e:
            logger.warning(f"{name} failed: {e}")
            return error_result(str(e))
        except Exception as e:
            logger.exception(f"{name} failed unexpectedly")
            return error_result(describe(e))
