"""Abstract base for model backends.

Each backend turns one ModelRequest (system prompt, transcript and
tool schemas) into one ModelTurn (text and tool-use blocks). The
session controller owns the loop; backends never execute tools.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
import logging
import shutil
from typing import Any

from ..models import ContentBlock, ConversationMessage, TextBlock, ToolUseBlock, Usage

logger = logging.getLogger(__name__)


@dataclass
class ModelRequest:
    """Everything a backend needs for one completion."""
    model: str
    messages: list[ConversationMessage]
    system: str = ""
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 4096


@dataclass
class ModelTurn:
    """One assistant completion."""
    content: list[ContentBlock] = field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: Usage = field(default_factory=Usage)
    model: str = ""

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


class ModelBackend(abc.ABC):
    """Abstract backend interface.

    Implementations:
    - AnthropicBackend: Messages API over HTTP (API key auth)
    - ClaudeCliBackend: Claude CLI via claude_agent_sdk (OAuth auth)
    - ScriptedBackend: canned turns for tests and offline runs
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'anthropic', 'claude-cli')."""

    @abc.abstractmethod
    async def complete(self, request: ModelRequest) -> ModelTurn:
        """Produce the next assistant turn.

        Raises BackendError subclasses on failure.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this backend can be used (credentials or CLI present)."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a CLI binary by preferring explicit command, then fallback.

        Keeps the raw value when nothing is on PATH so callers can
        surface the configured command in error messages.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s for backend %s",
                command, fallback, self.name,
            )
            return fallback
        return command or fallback or ""

    async def shutdown(self) -> None:
        """Release resources (HTTP sessions, subprocesses). Default no-op."""
        return None
