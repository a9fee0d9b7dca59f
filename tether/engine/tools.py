"""Tool definitions, the ``@tool`` decorator, and the per-session registry.

A tool handler is an async function taking the validated input dict
and returning an MCP-style result::

    {"content": [{"type": "text", "text": "..."}], "is_error": False}

Plain strings are accepted and wrapped. Handlers that raise are turned
into error results so the model sees the failure instead of the
session dying.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import ToolCallTimeoutError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]

_PY_TO_JSON_TYPE: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}

_JSON_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def text_result(text: str) -> dict[str, Any]:
    """Format a successful text response."""
    return {"content": [{"type": "text", "text": text}]}


def error_result(text: str) -> dict[str, Any]:
    """Format an error response."""
    return {
        "content": [{"type": "text", "text": f"ERROR: {text}"}],
        "is_error": True,
    }


def normalize_result(raw: Any) -> tuple[str, bool]:
    """Flatten a handler return value to (text, is_error)."""
    if raw is None:
        return "", False
    if isinstance(raw, str):
        return raw, False
    if isinstance(raw, dict) and "content" in raw:
        parts: list[str] = []
        content = raw.get("content") or []
        if isinstance(content, str):
            parts.append(content)
        else:
            for item in content:
                if isinstance(item, dict):
                    if item.get("type") == "text":
                        parts.append(str(item.get("text", "")))
                    else:
                        parts.append(f"[{item.get('type', 'unknown')} content]")
                else:
                    parts.append(str(item))
        return "\n".join(parts), bool(raw.get("is_error") or raw.get("isError"))
    return str(raw), False


def normalize_schema(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Accept a full JSON schema or a ``{"param": type}`` shorthand."""
    if not schema:
        return {"type": "object", "properties": {}}
    if schema.get("type") == "object" and "properties" in schema:
        return schema
    properties: dict[str, Any] = {}
    for name, kind in schema.items():
        if isinstance(kind, type):
            properties[name] = {"type": _PY_TO_JSON_TYPE.get(kind, "string")}
        elif isinstance(kind, dict):
            properties[name] = kind
        else:
            properties[name] = {"type": str(kind)}
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
    }


@dataclass
class Tool:
    """A callable action offered to the model."""
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    # Read-only tools are allowed in plan mode and never prompt.
    read_only: bool = False
    # File-editing tools are auto-approved in acceptEdits mode.
    edits_files: bool = False

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def validate_input(self, args: dict[str, Any]) -> str | None:
        """Return an error message if *args* does not fit the schema."""
        if not isinstance(args, dict):
            return f"Input for {self.name} must be an object"
        for key in self.input_schema.get("required", []):
            if key not in args:
                return f"Missing required parameter '{key}' for {self.name}"
        properties = self.input_schema.get("properties", {})
        for key, value in args.items():
            spec = properties.get(key)
            if not isinstance(spec, dict):
                continue
            expected = _JSON_TYPE_CHECKS.get(spec.get("type", ""))
            if expected is None:
                continue
            if isinstance(value, bool) and bool not in expected:
                return f"Parameter '{key}' for {self.name} must be {spec['type']}"
            if not isinstance(value, expected):
                return f"Parameter '{key}' for {self.name} must be {spec['type']}"
        return None


def tool(
    name: str,
    description: str,
    input_schema: dict[str, Any] | None = None,
    *,
    read_only: bool = False,
    edits_files: bool = False,
) -> Callable[[ToolHandler], Tool]:
    """Decorate an async handler into a Tool.

    >>> @tool("greet", "Greet someone", {"name": str})
    ... async def greet(args):
    ...     return text_result(f"Hello {args['name']}")
    """
    def decorator(handler: ToolHandler) -> Tool:
        return Tool(
            name=name,
            description=description,
            input_schema=normalize_schema(input_schema),
            handler=handler,
            read_only=read_only,
            edits_files=edits_files,
        )
    return decorator


class ToolTimeTracker:
    """Tracks cumulative time spent inside tool calls.

    Thread-safe for single-event-loop usage (tool calls within one
    session are serialized).
    """

    def __init__(self) -> None:
        self.accumulated_tool_time: float = 0.0
        self._current_start: float | None = None

    def enter(self) -> None:
        self._current_start = time.monotonic()

    def exit(self) -> None:
        if self._current_start is not None:
            self.accumulated_tool_time += time.monotonic() - self._current_start
            self._current_start = None


async def run_tool(
    tool_def: Tool,
    args: dict[str, Any],
    *,
    timeout: float = 0.0,
    tracker: ToolTimeTracker | None = None,
) -> tuple[str, bool]:
    """Execute a tool with validation and the per-call timeout.

    Returns (text, is_error). Never raises for handler failures.
    """
    problem = tool_def.validate_input(args)
    if problem:
        return f"ERROR: {problem}", True

    if tracker is not None:
        tracker.enter()
    started = time.monotonic()
    try:
        if timeout and timeout > 0:
            try:
                raw = await asyncio.wait_for(tool_def.handler(args), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ToolCallTimeoutError(tool_def.name, timeout) from exc
        else:
            raw = await tool_def.handler(args)
        text, is_error = normalize_result(raw)
    except ToolCallTimeoutError as exc:
        logger.warning("Tool timeout tool=%s timeout_s=%.1f", tool_def.name, timeout)
        return f"ERROR: {exc}", True
    except Exception as exc:
        logger.warning(
            "Tool error tool=%s error=%s", tool_def.name, exc, exc_info=True,
        )
        return f"ERROR: {type(exc).__name__}: {exc}", True
    finally:
        if tracker is not None:
            tracker.exit()
    logger.debug(
        "Tool end tool=%s duration_s=%.2f is_error=%s",
        tool_def.name, time.monotonic() - started, is_error,
    )
    return text, is_error


class ToolRegistry:
    """Registry of tools available to one session, keyed by name."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, tool_def: Tool, *, replace: bool = False) -> None:
        if tool_def.name in self._tools and not replace:
            raise ValueError(f"Tool already registered: {tool_def.name}")
        self._tools[tool_def.name] = tool_def
        logger.debug("Tool registered: %s", tool_def.name)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def copy(self) -> ToolRegistry:
        clone = ToolRegistry()
        clone._tools = dict(self._tools)
        return clone
