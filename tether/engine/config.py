"""Configuration loaded from environment variables, plus per-session options.

All engine settings have sensible defaults. Override via TETHER_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, TYPE_CHECKING

from .models import (
    AgentDefinition,
    PermissionMode,
    PermissionResult,
    ToolPermissionContext,
    parse_permission_mode,
)

if TYPE_CHECKING:
    from .hooks import HookMatcher
    from .yaml_config import BackendConfig
    from ..skills.models import Skill

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Optional async callback for tool permission requests.
# Signature: async def callback(tool_name, tool_input, context) -> PermissionResult
CanUseTool = Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[PermissionResult],
]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let callback errors break the engine
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Runtime-wide defaults shared by every session."""

    default_model: str = "claude-sonnet-4-5"
    # None selects by available credentials (see backends.registry)
    default_backend: str | None = None
    default_cwd: str = "."
    default_permission_mode: PermissionMode = PermissionMode.DEFAULT

    max_turns: int = 50
    # 1 lets the top-level session delegate; subagents cannot delegate further.
    max_subagent_depth: int = 1
    max_tokens: int = 4096
    # Max wall-clock time for any single tool call.
    # Set to 0 (or a negative value) to disable timeout.
    tool_call_timeout_seconds: float = 600.0
    hook_timeout_seconds: float = 60.0

    # Authentication / transport
    api_key_env: str = "ANTHROPIC_API_KEY"
    anthropic_base_url: str = "https://api.anthropic.com"
    claude_command: str = "claude"

    # Persistence
    persist_sessions: bool = True
    session_dir: str = str(Path.home() / ".tether" / "sessions")

    # Regex rules for command policy enforcement on the Bash tool.
    # These are merged with workspace .tether command lists.
    command_whitelist: list[str] = field(default_factory=list)
    command_blacklist: list[str] = field(default_factory=list)

    # Named backends from the YAML `backends:` section; empty means the defaults.
    backend_configs: dict[str, BackendConfig] = field(default_factory=dict, repr=False)

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "assistant_text", "session_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TETHER_* environment variables."""
        tether_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TETHER_")
        }
        if tether_vars:
            logger.info(
                "EngineConfig.from_env: TETHER_* env overrides: %s",
                ", ".join(sorted(tether_vars)),
            )
        else:
            logger.debug("EngineConfig.from_env: no TETHER_* env vars set, using defaults")

        config = cls(
            default_model=os.getenv("TETHER_MODEL", cls.default_model),
            default_backend=os.getenv("TETHER_BACKEND") or None,
            default_cwd=os.getenv("TETHER_CWD", cls.default_cwd),
            default_permission_mode=parse_permission_mode(
                os.getenv("TETHER_PERMISSION_MODE", cls.default_permission_mode.value)
            ),
            max_turns=int(os.getenv("TETHER_MAX_TURNS", str(cls.max_turns))),
            max_subagent_depth=int(os.getenv(
                "TETHER_MAX_SUBAGENT_DEPTH", str(cls.max_subagent_depth)
            )),
            max_tokens=int(os.getenv("TETHER_MAX_TOKENS", str(cls.max_tokens))),
            tool_call_timeout_seconds=float(os.getenv(
                "TETHER_TOOL_TIMEOUT", str(cls.tool_call_timeout_seconds)
            )),
            hook_timeout_seconds=float(os.getenv(
                "TETHER_HOOK_TIMEOUT", str(cls.hook_timeout_seconds)
            )),
            api_key_env=os.getenv("TETHER_API_KEY_ENV", cls.api_key_env),
            anthropic_base_url=os.getenv(
                "TETHER_ANTHROPIC_BASE_URL", cls.anthropic_base_url
            ),
            claude_command=os.getenv("TETHER_CLAUDE_COMMAND", cls.claude_command),
            persist_sessions=_env_flag("TETHER_PERSIST_SESSIONS", cls.persist_sessions),
            session_dir=os.getenv("TETHER_SESSION_DIR", cls.session_dir),
            log_level=os.getenv("TETHER_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: model=%s backend=%s cwd=%s log_level=%s",
            config.default_model, config.default_backend or "auto",
            config.default_cwd, config.log_level,
        )
        return config


@dataclass
class SessionOptions:
    """Options for one session. Unset fields fall back to EngineConfig."""

    system_prompt: str | None = None
    model: str | None = None
    backend: str | None = None
    cwd: str | None = None

    # Empty allowed_tools means every registered tool is visible.
    # Entries may end with "*" (e.g. "mcp__github__*").
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    permission_mode: PermissionMode | None = None
    can_use_tool: CanUseTool | None = field(default=None, repr=False)

    hooks: dict[Any, list[HookMatcher]] | None = field(default=None, repr=False)
    agents: dict[str, AgentDefinition] | None = None
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    include_builtin_tools: bool = True

    skills: list[Skill] | None = field(default=None, repr=False)
    skill_dirs: list[str] = field(default_factory=list)

    max_turns: int | None = None
    max_subagent_depth: int | None = None
    tool_call_timeout: float | None = None

    # Resumption
    resume: str | None = None
    fork_session: bool = False
    continue_conversation: bool = False
    persist_session: bool = True

    def copy(self, **changes: Any) -> SessionOptions:
        return replace(self, **changes)
