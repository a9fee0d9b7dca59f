"""Event types emitted by a session.

Each event is a typed dataclass. ``event_to_dict`` produces the plain
dict handed to EngineConfig.event_callback, and ``dict_to_event``
parses one back for consumers that receive JSON.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionEvent:
    """Base event from a session.

    ``parent_tool_use_id`` is set on events forwarded from a subagent
    and names the Task tool call that started it.
    """
    event_type: str = ""
    session_id: str = ""
    parent_tool_use_id: str | None = None


@dataclass
class SessionStarted(SessionEvent):
    event_type: str = "session_started"
    model: str = ""
    backend: str = ""
    tools: list[str] = field(default_factory=list)
    permission_mode: str = ""
    resumed_from: str | None = None


@dataclass
class SessionStateChanged(SessionEvent):
    event_type: str = "session_state_changed"
    old_state: str = ""
    new_state: str = ""


@dataclass
class UserPrompt(SessionEvent):
    event_type: str = "user_prompt"
    text: str = ""


@dataclass
class AssistantText(SessionEvent):
    event_type: str = "assistant_text"
    text: str = ""
    model: str = ""


@dataclass
class ToolUseRequested(SessionEvent):
    event_type: str = "tool_use_requested"
    tool_use_id: str = ""
    tool_name: str = ""
    input: dict = field(default_factory=dict)


@dataclass
class ToolPermissionDenied(SessionEvent):
    event_type: str = "tool_permission_denied"
    tool_use_id: str = ""
    tool_name: str = ""
    reason: str = ""
    source: str = ""


@dataclass
class ToolResultReceived(SessionEvent):
    event_type: str = "tool_result"
    tool_use_id: str = ""
    tool_name: str = ""
    content: str = ""
    is_error: bool = False
    duration_seconds: float = 0.0


@dataclass
class HookMessage(SessionEvent):
    """A hook returned a systemMessage for the user."""
    event_type: str = "hook_message"
    hook_event: str = ""
    message: str = ""


@dataclass
class SubagentStarted(SessionEvent):
    event_type: str = "subagent_started"
    agent_name: str = ""
    child_session_id: str = ""
    description: str = ""
    depth: int = 0


@dataclass
class SubagentFinished(SessionEvent):
    event_type: str = "subagent_finished"
    agent_name: str = ""
    child_session_id: str = ""
    is_error: bool = False


@dataclass
class SessionResult(SessionEvent):
    event_type: str = "result"
    subtype: str = "success"
    result: str = ""
    is_error: bool = False
    num_turns: int = 0
    duration_seconds: float = 0.0
    # Time spent inside tool calls during this run
    tool_seconds: float = 0.0
    usage: dict = field(default_factory=dict)
    stop_reason: str | None = None


_EVENT_MAP: dict[str, type[SessionEvent]] = {
    "session_started": SessionStarted,
    "session_state_changed": SessionStateChanged,
    "user_prompt": UserPrompt,
    "assistant_text": AssistantText,
    "tool_use_requested": ToolUseRequested,
    "tool_permission_denied": ToolPermissionDenied,
    "tool_result": ToolResultReceived,
    "hook_message": HookMessage,
    "subagent_started": SubagentStarted,
    "subagent_finished": SubagentFinished,
    "result": SessionResult,
}


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" for callback consumers
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> SessionEvent:
    """Convert a callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SessionEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
