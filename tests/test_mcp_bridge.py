from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import mcp.types as types
import pytest

from tether.engine.backends.scripted import ScriptedBackend, text_turn, tool_turn
from tether.engine.config import EngineConfig, SessionOptions
from tether.engine.errors import McpBridgeError
from tether.engine.events import ToolResultReceived
from tether.engine.mcp_bridge import (
    McpBridge,
    _result_to_dict,
    create_sdk_mcp_server,
    expand_env,
    load_workspace_servers,
    mcp_tool_name,
    parse_server_config,
    split_mcp_tool_name,
)
from tether.engine.query import query
from tether.engine.tools import ToolRegistry, text_result, tool


@tool("add", "Add two numbers", {"a": int, "b": int}, read_only=True)
async def add(args):
    return text_result(str(args["a"] + args["b"]))


def test_tool_name_round_trip() -> None:
    assert mcp_tool_name("calc", "add") == "mcp__calc__add"
    assert split_mcp_tool_name("mcp__calc__add_many") == ("calc", "add_many")
    assert split_mcp_tool_name("mcp__tool_with__underscores__x") == ("tool_with", "underscores__x")
    assert split_mcp_tool_name("Read") is None


def test_expand_env_walks_nested_values(monkeypatch) -> None:
    monkeypatch.setenv("TETHER_TEST_TOKEN", "s3cret")
    expanded = expand_env({
        "headers": {"Authorization": "Bearer ${TETHER_TEST_TOKEN}"},
        "args": ["--token", "$TETHER_TEST_TOKEN"],
        "port": 8080,
    })
    assert expanded == {
        "headers": {"Authorization": "Bearer s3cret"},
        "args": ["--token", "s3cret"],
        "port": 8080,
    }


@pytest.mark.parametrize("cfg, message", [
    ({"type": "stdio"}, "missing 'command'"),
    ({"type": "http"}, "missing 'url'"),
    ({"type": "sse", "url": ""}, "missing 'url'"),
    ({"type": "websocket", "url": "ws://x"}, "unknown server type"),
    ({"type": "sdk"}, "missing its 'instance'"),
])
def test_invalid_server_config(cfg, message) -> None:
    with pytest.raises(McpBridgeError, match=message):
        parse_server_config("broken", cfg)


def test_stdio_config_defaults_and_env(monkeypatch) -> None:
    monkeypatch.setenv("TETHER_TEST_DB", "/tmp/db.sqlite")
    cfg = parse_server_config("db", {
        "command": "db-mcp",
        "args": ["--path", "${TETHER_TEST_DB}"],
        "env": {"DB": "${TETHER_TEST_DB}"},
    })
    assert cfg.type == "stdio"
    assert cfg.args == ["--path", "/tmp/db.sqlite"]
    assert cfg.env == {"DB": "/tmp/db.sqlite"}


def test_load_workspace_servers(tmp_path) -> None:
    assert load_workspace_servers(tmp_path) == {}
    (tmp_path / ".mcp.json").write_text(json.dumps({
        "mcpServers": {"github": {"type": "http", "url": "https://example.test/mcp"}},
    }))
    assert load_workspace_servers(tmp_path) == {
        "github": {"type": "http", "url": "https://example.test/mcp"},
    }
    (tmp_path / ".mcp.json").write_text("{not json")
    assert load_workspace_servers(tmp_path) == {}


@pytest.mark.asyncio
async def test_sdk_server_tools_are_registered_with_prefix() -> None:
    registry = ToolRegistry()
    async with McpBridge({"calc": create_sdk_mcp_server("calc", tools=[add])}) as bridge:
        names = await bridge.start(registry)
    assert names == ["mcp__calc__add"]
    bridged = registry.get("mcp__calc__add")
    assert bridged.read_only
    assert bridged.input_schema["required"] == ["a", "b"]


@pytest.mark.asyncio
async def test_sdk_tool_called_from_session() -> None:
    backend = ScriptedBackend([
        tool_turn("mcp__calc__add", {"a": 2, "b": 3}),
        text_turn("It is 5"),
    ])
    options = SessionOptions(
        mcp_servers={"calc": create_sdk_mcp_server("calc", tools=[add])},
        allowed_tools=["mcp__calc__*"],
        include_builtin_tools=False,
        skills=[],
    )
    events = [
        e async for e in query(
            "add 2 and 3", options,
            backend=backend, config=EngineConfig(persist_sessions=False),
        )
    ]
    result = next(e for e in events if isinstance(e, ToolResultReceived))
    assert result.content == "5"
    assert [t["name"] for t in backend.requests[0].tools] == ["mcp__calc__add"]


@pytest.mark.asyncio
async def test_connection_failure_is_wrapped() -> None:
    bridge = McpBridge({"remote": {"type": "http", "url": "http://127.0.0.1:9/mcp"}})
    with patch.object(McpBridge, "_open_transport", AsyncMock(side_effect=OSError("refused"))):
        with pytest.raises(McpBridgeError, match="connection failure: refused"):
            await bridge.start(ToolRegistry())
    await bridge.close()


@pytest.mark.asyncio
async def test_remote_handler_maps_results_and_failures() -> None:
    bridge = McpBridge()
    remote = AsyncMock()
    remote.call_tool.return_value = types.CallToolResult(
        content=[types.TextContent(type="text", text="3 issues")],
        isError=False,
    )
    bridge._sessions["github"] = remote

    handler = bridge._make_remote_handler("github", "list_issues")
    assert await handler({"repo": "x"}) == {
        "content": [{"type": "text", "text": "3 issues"}],
        "is_error": False,
    }
    remote.call_tool.assert_awaited_once_with("list_issues", {"repo": "x"})

    remote.call_tool.side_effect = RuntimeError("socket closed")
    failed = await handler({})
    assert failed["is_error"]
    assert "socket closed" in failed["content"][0]["text"]

    missing = await bridge._make_remote_handler("gone", "x")({})
    assert "not connected" in missing["content"][0]["text"]


def test_structured_only_result_is_serialised() -> None:
    result = types.CallToolResult(content=[], structuredContent={"count": 3})
    assert _result_to_dict(result) == {
        "content": [{"type": "text", "text": '{"count": 3}'}],
        "is_error": False,
    }
