"""Stdio MCP server exposing a tool registry.

Lets any MCP host (including another tether session via a ``stdio``
mcp_servers entry) call tether's built-in tools and in-process SDK
server tools.

Usage:
    tether mcp-serve --cwd /path/to/project
    tether mcp-serve --config tether.yaml --allowed-tools Read Grep Glob
"""
from __future__ import annotations

import logging
from typing import Any

from .tool_gateway import ToolGateway
from .tools import ToolRegistry, run_tool

logger = logging.getLogger(__name__)


class ToolCallFailed(Exception):
    """Raised from call_tool so the MCP layer reports isError."""


def build_server(
    registry: ToolRegistry,
    *,
    name: str = "tether",
    tool_call_timeout: float = 600.0,
    allowed_tools: list[str] | None = None,
    disallowed_tools: list[str] | None = None,
):
    """Create an ``mcp`` low-level Server over *registry*."""
    import mcp.types as types
    from mcp.server.lowlevel import Server

    gateway = ToolGateway(
        registry,
        session_id="mcp-serve",
        allowed_tools=allowed_tools,
        disallowed_tools=disallowed_tools,
    )
    server = Server(name)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name=t.name,
                description=t.description,
                inputSchema=t.input_schema,
                annotations=types.ToolAnnotations(readOnlyHint=t.read_only),
            )
            for t in gateway.visible_tools()
        ]

    @server.call_tool()
    async def call_tool(tool_name: str, arguments: dict[str, Any] | None) -> list[types.TextContent]:
        tool_def = gateway.require(tool_name)
        text, is_error = await run_tool(
            tool_def, dict(arguments or {}), timeout=tool_call_timeout,
        )
        logger.info("mcp-serve call tool=%s is_error=%s", tool_name, is_error)
        if is_error:
            raise ToolCallFailed(text)
        return [types.TextContent(type="text", text=text)]

    return server


async def serve_stdio(server) -> None:
    """Run *server* on stdin/stdout until the host disconnects."""
    from mcp.server.stdio import stdio_server

    logger.info("mcp-serve: starting stdio transport")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
    logger.info("mcp-serve: host disconnected")
