"""MCP tool bridge: expose MCP server tools as session tools.

Supports four server types:
- sdk: in-process servers built with create_sdk_mcp_server()
- stdio: local subprocess servers (command + args + env)
- http: streamable HTTP servers (url + headers)
- sse: Server-Sent Events servers (url + headers)

Every bridged tool is registered as ``mcp__<server>__<tool>``.
String values may reference environment variables as ``${VAR}``.

Workspace servers can also be declared in ``.mcp.json``::

    {
        "mcpServers": {
            "github": {
                "type": "http",
                "url": "https://mcp.github.com/v1",
                "headers": {"Authorization": "Bearer ${GITHUB_TOKEN}"}
            }
        }
    }
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import McpBridgeError
from .tools import Tool, ToolRegistry, error_result

logger = logging.getLogger(__name__)

MCP_PREFIX = "mcp__"


def mcp_tool_name(server: str, tool_name: str) -> str:
    return f"{MCP_PREFIX}{server}__{tool_name}"


def split_mcp_tool_name(name: str) -> tuple[str, str] | None:
    """Inverse of mcp_tool_name, or None for non-MCP names."""
    if not name.startswith(MCP_PREFIX) or name.count("__") < 2:
        return None
    _, server, tool_name = name.split("__", 2)
    return server, tool_name


def expand_env(value: Any) -> Any:
    """Expand ``${VAR}`` references recursively in strings, lists and dicts."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    return value


@dataclass
class SdkMcpServer:
    """An in-process MCP server: a named bundle of tools."""
    name: str
    version: str = "1.0.0"
    tools: list[Tool] = field(default_factory=list)


def create_sdk_mcp_server(
    name: str,
    version: str = "1.0.0",
    tools: list[Tool] | None = None,
) -> dict[str, Any]:
    """Build an mcp_servers entry for an in-process server."""
    return {
        "type": "sdk",
        "name": name,
        "instance": SdkMcpServer(name=name, version=version, tools=list(tools or [])),
    }


@dataclass
class McpServerConfig:
    """A single external or in-process MCP server configuration."""

    name: str
    type: str = "stdio"

    # stdio fields
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None

    # http / sse fields
    url: str | None = None
    headers: dict[str, str] | None = None

    # sdk field
    instance: SdkMcpServer | None = None


def parse_server_config(name: str, cfg: dict[str, Any]) -> McpServerConfig:
    """Parse and validate one mcp_servers entry.

    Raises McpBridgeError if required fields are missing.
    """
    if not isinstance(cfg, dict):
        raise McpBridgeError(name, "config must be a mapping")
    server_type = cfg.get("type", "stdio")
    if server_type == "sdk":
        instance = cfg.get("instance")
        if not isinstance(instance, SdkMcpServer):
            raise McpBridgeError(name, "sdk server is missing its 'instance'")
        return McpServerConfig(name=name, type="sdk", instance=instance)

    cfg = expand_env(cfg)
    if server_type == "stdio":
        if not cfg.get("command"):
            raise McpBridgeError(name, "stdio server is missing 'command'")
    elif server_type in ("http", "sse"):
        if not cfg.get("url"):
            raise McpBridgeError(name, f"{server_type} server is missing 'url'")
    else:
        raise McpBridgeError(name, f"unknown server type {server_type!r}")
    return McpServerConfig(
        name=name,
        type=server_type,
        command=cfg.get("command"),
        args=list(cfg.get("args") or []),
        env=cfg.get("env"),
        url=cfg.get("url"),
        headers=cfg.get("headers"),
    )


def load_workspace_servers(cwd: str | Path) -> dict[str, dict[str, Any]]:
    """Read ``mcpServers`` from ``<cwd>/.mcp.json`` if present."""
    path = Path(cwd) / ".mcp.json"
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return {}
    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        return {}
    logger.info("Loaded %d MCP server(s) from %s", len(servers), path)
    return {name: dict(cfg) for name, cfg in servers.items() if isinstance(cfg, dict)}


def _result_to_dict(result: Any) -> dict[str, Any]:
    """Convert an mcp CallToolResult to the tool result dict shape."""
    content: list[dict[str, Any]] = []
    for item in getattr(result, "content", None) or []:
        item_type = getattr(item, "type", "text")
        if item_type == "text":
            content.append({"type": "text", "text": getattr(item, "text", "")})
        elif item_type == "resource":
            resource = getattr(item, "resource", None)
            text = getattr(resource, "text", None)
            if text is not None:
                content.append({"type": "text", "text": text})
            else:
                content.append({"type": "resource"})
        else:
            content.append({"type": item_type})
    structured = getattr(result, "structuredContent", None)
    if not content and structured is not None:
        content.append({"type": "text", "text": json.dumps(structured)})
    return {"content": content, "is_error": bool(getattr(result, "isError", False))}


class McpBridge:
    """Connects configured MCP servers and registers their tools.

    External connections live in an AsyncExitStack and are closed by
    ``close()`` (or on ``async with`` exit).
    """

    def __init__(self, servers: dict[str, dict[str, Any]] | None = None) -> None:
        self._configs = [
            parse_server_config(name, cfg) for name, cfg in (servers or {}).items()
        ]
        self._stack: AsyncExitStack | None = None
        self._sessions: dict[str, Any] = {}
        self._registered: list[str] = []

    @property
    def server_names(self) -> list[str]:
        return [c.name for c in self._configs]

    @property
    def registered_tools(self) -> list[str]:
        return list(self._registered)

    async def __aenter__(self) -> McpBridge:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self, registry: ToolRegistry) -> list[str]:
        """Connect every server and register its tools into *registry*."""
        if self._stack is None:
            self._stack = AsyncExitStack()
        for cfg in self._configs:
            if cfg.type == "sdk":
                self._register_sdk(cfg, registry)
            else:
                await self._connect_external(cfg, registry)
        return self.registered_tools

    def _register_sdk(self, cfg: McpServerConfig, registry: ToolRegistry) -> None:
        assert cfg.instance is not None
        for inner in cfg.instance.tools:
            bridged = Tool(
                name=mcp_tool_name(cfg.name, inner.name),
                description=inner.description,
                input_schema=inner.input_schema,
                handler=inner.handler,
                read_only=inner.read_only,
                edits_files=inner.edits_files,
            )
            registry.register(bridged, replace=True)
            self._registered.append(bridged.name)
        logger.info(
            "MCP sdk server %s registered %d tool(s)", cfg.name, len(cfg.instance.tools),
        )

    async def _open_transport(self, cfg: McpServerConfig):
        assert self._stack is not None
        if cfg.type == "stdio":
            from mcp import StdioServerParameters
            from mcp.client.stdio import stdio_client

            params = StdioServerParameters(
                command=cfg.command or "",
                args=cfg.args,
                env={**os.environ, **cfg.env} if cfg.env else None,
            )
            read, write = await self._stack.enter_async_context(stdio_client(params))
        elif cfg.type == "sse":
            from mcp.client.sse import sse_client

            read, write = await self._stack.enter_async_context(
                sse_client(cfg.url or "", headers=cfg.headers)
            )
        else:
            from mcp.client.streamable_http import streamablehttp_client

            read, write, _ = await self._stack.enter_async_context(
                streamablehttp_client(cfg.url or "", headers=cfg.headers)
            )
        return read, write

    async def _connect_external(self, cfg: McpServerConfig, registry: ToolRegistry) -> None:
        from mcp import ClientSession

        assert self._stack is not None
        try:
            read, write = await self._open_transport(cfg)
            session = await self._stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            listed = await session.list_tools()
        except McpBridgeError:
            raise
        except Exception as exc:
            raise McpBridgeError(cfg.name, f"connection failure: {exc}") from exc

        self._sessions[cfg.name] = session
        for remote in listed.tools:
            annotations = getattr(remote, "annotations", None)
            bridged = Tool(
                name=mcp_tool_name(cfg.name, remote.name),
                description=remote.description or "",
                input_schema=remote.inputSchema or {"type": "object", "properties": {}},
                handler=self._make_remote_handler(cfg.name, remote.name),
                read_only=bool(getattr(annotations, "readOnlyHint", False)),
            )
            registry.register(bridged, replace=True)
            self._registered.append(bridged.name)
        logger.info(
            "MCP %s server %s registered %d tool(s)",
            cfg.type, cfg.name, len(listed.tools),
        )

    def _make_remote_handler(self, server: str, tool_name: str):
        async def handler(args: dict[str, Any]) -> dict[str, Any]:
            session = self._sessions.get(server)
            if session is None:
                return error_result(f"MCP server '{server}' is not connected")
            try:
                result = await session.call_tool(tool_name, args)
            except Exception as exc:
                logger.warning("MCP call failed %s/%s: %s", server, tool_name, exc)
                return error_result(f"MCP server '{server}' call failed: {exc}")
            return _result_to_dict(result)
        return handler

    async def close(self) -> None:
        if self._stack is not None:
            try:
                await self._stack.aclose()
            except Exception as exc:
                logger.warning("Error closing MCP connections: %s", exc)
            self._stack = None
        self._sessions.clear()
