"""Core data models for the agent runtime.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    CLOSED = "closed"


class PermissionMode(str, Enum):
    """How the tool gateway treats calls that nobody explicitly approved."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class HookEvent(str, Enum):
    """Points in the session loop where hooks run."""
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"


class ResultSubtype(str, Enum):
    SUCCESS = "success"
    ERROR_MAX_TURNS = "error_max_turns"
    ERROR_DURING_EXECUTION = "error_during_execution"
    INTERRUPTED = "interrupted"
    BLOCKED = "blocked"


class RememberScope(str, Enum):
    """Where an "always allow" answer is stored."""
    PROJECT = "project"
    GLOBAL = "global"


def make_id() -> str:
    return str(uuid.uuid4())


def make_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_permission_mode(value: str | PermissionMode | None) -> PermissionMode:
    """Parse a permission mode string to enum. Unknown values map to DEFAULT."""
    if isinstance(value, PermissionMode):
        return value
    mapping = {
        "default": PermissionMode.DEFAULT,
        "acceptEdits": PermissionMode.ACCEPT_EDITS,
        "accept_edits": PermissionMode.ACCEPT_EDITS,
        "bypassPermissions": PermissionMode.BYPASS,
        "bypass": PermissionMode.BYPASS,
        "plan": PermissionMode.PLAN,
    }
    return mapping.get(value or "default", PermissionMode.DEFAULT)


# ── Content blocks ──


@dataclass
class TextBlock:
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    id: str = field(default_factory=make_tool_use_id)
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": self.input,
        }


@dataclass
class ToolResultBlock:
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            d["is_error"] = True
        return d


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Inverse of ``to_dict`` on any content block."""
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data.get("text", ""))
    if kind == "tool_use":
        return ToolUseBlock(
            id=data.get("id") or make_tool_use_id(),
            name=data.get("name", ""),
            input=dict(data.get("input") or {}),
        )
    if kind == "tool_result":
        content = data.get("content", "")
        if isinstance(content, list):
            content = "\n".join(
                part.get("text", "") for part in content
                if isinstance(part, dict)
            )
        return ToolResultBlock(
            tool_use_id=data.get("tool_use_id", ""),
            content=str(content),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


@dataclass
class ConversationMessage:
    """One transcript entry. ``role`` is "user" or "assistant"."""
    role: str
    content: list[ContentBlock] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(
            b.text for b in self.content if isinstance(b, TextBlock)
        )

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": [b.to_dict() for b in self.content],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        content = data.get("content", [])
        if isinstance(content, str):
            blocks: list[ContentBlock] = [TextBlock(text=content)]
        else:
            blocks = [block_from_dict(b) for b in content]
        return cls(role=data.get("role", "user"), content=blocks)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage | None) -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


# ── Permissions ──


@dataclass
class PermissionResultAllow:
    """Tool call may proceed, optionally with rewritten input.

    ``remember`` persists the approval for this tool in the permission
    store under ``scope``.
    """
    updated_input: dict[str, Any] | None = None
    remember: bool = False
    scope: RememberScope = RememberScope.PROJECT
    behavior: str = "allow"


@dataclass
class PermissionResultDeny:
    """Tool call is refused. ``message`` is returned to the model."""
    message: str = "Permission denied"
    interrupt: bool = False
    behavior: str = "deny"


PermissionResult = PermissionResultAllow | PermissionResultDeny


@dataclass
class ToolPermissionContext:
    """Extra information passed to ``can_use_tool`` callbacks."""
    session_id: str
    tool_use_id: str
    permission_mode: PermissionMode
    agent_name: str | None = None
    reason: str = ""


# ── Subagents ──


@dataclass
class AgentDefinition:
    """A named subagent the model can delegate to via the Task tool.

    ``tools=None`` inherits the parent's visible tools. ``model`` of
    None or "inherit" keeps the parent's model.
    """
    description: str
    prompt: str
    tools: list[str] | None = None
    model: str | None = None
    permission_mode: PermissionMode | None = None


# ── Persistence ──


@dataclass
class SessionRecord:
    """Serialized state of a session, enough to resume it."""
    session_id: str
    model: str = ""
    messages: list[ConversationMessage] = field(default_factory=list)
    parent_session_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    usage: Usage = field(default_factory=Usage)
    num_turns: int = 0
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "model": self.model,
            "parent_session_id": self.parent_session_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "usage": self.usage.to_dict(),
            "num_turns": self.num_turns,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        usage = data.get("usage") or {}
        return cls(
            session_id=data["session_id"],
            model=data.get("model", ""),
            parent_session_id=data.get("parent_session_id"),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            usage=Usage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            ),
            num_turns=int(data.get("num_turns", 0)),
            title=data.get("title", ""),
            messages=[
                ConversationMessage.from_dict(m)
                for m in data.get("messages", [])
            ],
        )


def _parse_dt(value: str | None) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return utcnow()
