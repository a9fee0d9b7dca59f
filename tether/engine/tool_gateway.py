"""Tool gateway: decides which tools a session sees and may call.

Authorisation order for one tool call:

    disallowed_tools ──> deny (even in bypassPermissions)
    not visible      ──> deny
    hook deny        ──> deny
    plan mode        ──> deny anything not read-only
    bypass mode      ──> allow
    Bash command on the blacklist / danger heuristic ──> ask
    hook allow       ──> allow
    hook ask         ──> ask
    read-only tool, acceptEdits + edit tool, remembered tool ──> allow
    can_use_tool set ──> ask
    otherwise        ──> allow

"ask" goes to the session's can_use_tool callback; without one the
call is denied.
"""
from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

from .errors import ToolNotFoundError
from .models import (
    PermissionMode,
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    RememberScope,
    ToolPermissionContext,
    ToolUseBlock,
)

if TYPE_CHECKING:
    from .command_policy import CommandPolicy
    from .config import CanUseTool
    from .permission_store import PermissionStore
    from .tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

SHELL_TOOLS: frozenset[str] = frozenset({"Bash"})


def matches_tool_pattern(name: str, pattern: str) -> bool:
    """Exact match, or prefix match when *pattern* ends with "*"."""
    pattern = pattern.strip()
    if not pattern:
        return False
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return name.startswith(pattern[:-1])
    return name == pattern


def extract_command(tool_input: dict[str, Any]) -> str:
    if not isinstance(tool_input, dict):
        return ""
    command = (
        tool_input.get("command")
        or tool_input.get("cmd")
        or tool_input.get("script")
        or ""
    )
    return command.strip() if isinstance(command, str) else ""


def _coerce_permission_result(raw: Any) -> PermissionResult:
    """Accept typed results plus the short string/bool forms."""
    if isinstance(raw, (PermissionResultAllow, PermissionResultDeny)):
        return raw
    if raw is True or raw == "allow":
        return PermissionResultAllow()
    if raw == "allow_always":
        return PermissionResultAllow(remember=True, scope=RememberScope.GLOBAL)
    if raw == "allow_project":
        return PermissionResultAllow(remember=True, scope=RememberScope.PROJECT)
    if isinstance(raw, str) and raw and raw != "deny":
        return PermissionResultDeny(message=raw)
    return PermissionResultDeny(message="User denied tool call")


class ToolGateway:
    """Filters tool visibility and authorises each tool call."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        session_id: str,
        allowed_tools: list[str] | None = None,
        disallowed_tools: list[str] | None = None,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        can_use_tool: CanUseTool | None = None,
        command_policy: CommandPolicy | None = None,
        permission_store: PermissionStore | None = None,
        always_allowed_tools: set[str] | None = None,
        agent_name: str | None = None,
    ) -> None:
        self._registry = registry
        self._session_id = session_id
        self._allowed = [p for p in (allowed_tools or []) if p.strip()]
        self._disallowed = [p for p in (disallowed_tools or []) if p.strip()]
        self._mode = permission_mode
        self._can_use_tool = can_use_tool
        self._command_policy = command_policy
        self._permission_store = permission_store
        # Shared mutable set so remembered approvals reach subagents too
        if always_allowed_tools is None:
            always_allowed_tools = permission_store.load() if permission_store else set()
        self._always_allowed = always_allowed_tools
        self._agent_name = agent_name

    @property
    def permission_mode(self) -> PermissionMode:
        return self._mode

    @permission_mode.setter
    def permission_mode(self, mode: PermissionMode) -> None:
        logger.info(
            "Permission mode change session=%s %s -> %s",
            self._session_id[:8], self._mode.value, mode.value,
        )
        self._mode = mode

    @property
    def can_use_tool(self) -> CanUseTool | None:
        return self._can_use_tool

    @property
    def always_allowed_tools(self) -> set[str]:
        return self._always_allowed

    @property
    def command_policy(self) -> CommandPolicy | None:
        return self._command_policy

    @property
    def permission_store(self) -> PermissionStore | None:
        return self._permission_store

    def is_disallowed(self, name: str) -> bool:
        return any(matches_tool_pattern(name, p) for p in self._disallowed)

    def is_visible(self, name: str) -> bool:
        if name not in self._registry or self.is_disallowed(name):
            return False
        if not self._allowed:
            return True
        return any(matches_tool_pattern(name, p) for p in self._allowed)

    def visible_tools(self) -> list[Tool]:
        return [t for t in self._registry.tools() if self.is_visible(t.name)]

    def require(self, name: str) -> Tool:
        """The visible tool called *name*; raises ToolNotFoundError otherwise."""
        tool_def = self._registry.get(name)
        if tool_def is None or not self.is_visible(name):
            raise ToolNotFoundError(name)
        return tool_def

    async def authorize(
        self,
        tool_use: ToolUseBlock,
        *,
        hook_decision: str | None = None,
        hook_reason: str = "",
    ) -> PermissionResult:
        name = tool_use.name
        tool_input = tool_use.input

        if self.is_disallowed(name):
            return self._deny(name, f"Tool '{name}' is disallowed for this session")
        tool_def = self._registry.get(name)
        if tool_def is None or not self.is_visible(name):
            return self._deny(name, f"Tool not available: {name}")
        if hook_decision in ("deny", "block"):
            return self._deny(name, hook_reason or "Denied by hook")

        mode = self._mode
        if mode == PermissionMode.PLAN and not tool_def.read_only:
            return self._deny(
                name,
                f"Plan mode: '{name}' cannot run until the plan is approved. "
                "Only read-only tools are available.",
            )
        if mode == PermissionMode.BYPASS:
            return PermissionResultAllow()

        if name in SHELL_TOOLS and self._command_policy is not None:
            command = extract_command(tool_input)
            if self._command_policy.evaluate(command) == "prompt":
                logger.info(
                    "Gateway command needs approval session=%s cmd=%.80s",
                    self._session_id[:8], command,
                )
                return await self._ask(
                    tool_use, reason=f"Command requires approval: {command[:200]}",
                )

        if hook_decision == "allow":
            return PermissionResultAllow()
        if hook_decision == "ask":
            return await self._ask(tool_use, reason=hook_reason or "Hook requested confirmation")

        if tool_def.read_only:
            return PermissionResultAllow()
        if mode == PermissionMode.ACCEPT_EDITS and tool_def.edits_files:
            return PermissionResultAllow()
        if any(matches_tool_pattern(name, p) for p in self._always_allowed):
            logger.debug("Gateway allow_always hit tool=%s", name)
            return PermissionResultAllow()
        if self._can_use_tool is not None:
            return await self._ask(tool_use, reason="")
        return PermissionResultAllow()

    async def _ask(self, tool_use: ToolUseBlock, *, reason: str) -> PermissionResult:
        name = tool_use.name
        if self._can_use_tool is None:
            return self._deny(
                name,
                "Tool call requires permission but no permission callback is "
                f"configured. {reason}".strip(),
            )
        context = ToolPermissionContext(
            session_id=self._session_id,
            tool_use_id=tool_use.id,
            permission_mode=self._mode,
            agent_name=self._agent_name,
            reason=reason,
        )
        try:
            raw = await self._can_use_tool(name, dict(tool_use.input), context)
        except Exception as exc:
            logger.warning("Permission callback error tool=%s: %s, blocking", name, exc)
            return self._deny(name, f"Permission check failed: {exc}")

        result = _coerce_permission_result(raw)
        logger.info(
            "Permission callback session=%s tool=%s behavior=%s",
            self._session_id[:8], name, result.behavior,
        )
        if isinstance(result, PermissionResultAllow) and result.remember:
            self._remember(tool_use, result.scope)
        return result

    def _remember(self, tool_use: ToolUseBlock, scope: RememberScope) -> None:
        if tool_use.name in SHELL_TOOLS and self._command_policy is not None:
            pattern = self._command_policy.remember_command(extract_command(tool_use.input))
            logger.info("Remembered command pattern %s", pattern)
            return
        self._always_allowed.add(tool_use.name)
        if self._permission_store is not None:
            self._permission_store.remember(tool_use.name, scope)

    def _deny(self, name: str, message: str) -> PermissionResultDeny:
        logger.info(
            "Gateway deny session=%s tool=%s reason=%s",
            self._session_id[:8], name, message[:120],
        )
        return PermissionResultDeny(message=message)
