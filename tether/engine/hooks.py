"""Hook dispatch around tool calls and turn boundaries.

Hooks are async callbacks registered per HookEvent through
HookMatcher entries::

    async def guard(input_data, tool_use_id, context):
        if "rm -rf" in input_data["tool_input"].get("command", ""):
            return {
                "hookSpecificOutput": {
                    "hookEventName": "PreToolUse",
                    "permissionDecision": "deny",
                    "permissionDecisionReason": "Destructive command",
                }
            }
        return {}

    options.hooks = {"PreToolUse": [HookMatcher(matcher="Bash", hooks=[guard])]}

Dispatch rules:
- Matchers run in registration order, hooks within a matcher likewise.
- The first deny/block short-circuits the remaining hooks.
- ``updatedInput`` replaces the tool input for later hooks and the call.
- ``continue: False`` asks the session to stop after the current step.
- A hook that raises or times out counts as a deny for PreToolUse
  and is ignored for every other event.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import HookError
from .models import HookEvent

logger = logging.getLogger(__name__)

HookCallback = Callable[[dict[str, Any], "str | None", "HookContext"], Awaitable[dict[str, Any]]]

_TOOL_EVENTS = {HookEvent.PRE_TOOL_USE, HookEvent.POST_TOOL_USE}


@dataclass
class HookContext:
    """Session facts handed to every hook invocation."""
    session_id: str
    cwd: str
    permission_mode: str
    agent_name: str | None = None
    depth: int = 0


@dataclass
class HookMatcher:
    """Binds hooks to tool names matching a regex.

    ``matcher`` is matched in full against the tool name, so
    ``"Write|Edit"`` matches exactly those two tools. None or "*"
    matches everything.
    """
    matcher: str | None = None
    hooks: list[HookCallback] = field(default_factory=list)
    timeout: float | None = None

    def matches(self, tool_name: str | None) -> bool:
        if self.matcher in (None, "", "*"):
            return True
        if tool_name is None:
            return False
        try:
            return re.fullmatch(self.matcher, tool_name) is not None
        except re.error:
            logger.warning("Invalid hook matcher regex ignored: %s", self.matcher)
            return self.matcher == tool_name


@dataclass
class HookOutcome:
    """Aggregated result of running every matching hook for one event."""
    decision: str | None = None  # "allow", "deny", "ask", "block"
    reason: str = ""
    updated_input: dict[str, Any] | None = None
    additional_context: list[str] = field(default_factory=list)
    system_messages: list[str] = field(default_factory=list)
    stop: bool = False
    stop_reason: str = ""
    hooks_run: int = 0

    @property
    def denied(self) -> bool:
        return self.decision in ("deny", "block")


def _coerce_event(event: HookEvent | str) -> HookEvent:
    if isinstance(event, HookEvent):
        return event
    return HookEvent(event)


class HookDispatcher:
    """Runs registered hooks for an event and folds their outputs."""

    def __init__(
        self,
        hooks: dict[Any, list[HookMatcher]] | None = None,
        *,
        default_timeout: float = 60.0,
    ) -> None:
        self._matchers: dict[HookEvent, list[HookMatcher]] = {}
        self._default_timeout = default_timeout
        for event, matchers in (hooks or {}).items():
            for matcher in matchers:
                self.register(event, matcher)

    def register(self, event: HookEvent | str, matcher: HookMatcher) -> None:
        self._matchers.setdefault(_coerce_event(event), []).append(matcher)

    async def dispatch(
        self,
        event: HookEvent | str,
        input_data: dict[str, Any],
        context: HookContext,
        *,
        tool_use_id: str | None = None,
    ) -> HookOutcome:
        event = _coerce_event(event)
        outcome = HookOutcome()
        matchers = self._matchers.get(event, [])
        if not matchers:
            return outcome

        tool_name = input_data.get("tool_name") if event in _TOOL_EVENTS else None
        payload = dict(input_data)
        payload.setdefault("hook_event_name", event.value)
        payload.setdefault("session_id", context.session_id)
        payload.setdefault("cwd", context.cwd)
        payload.setdefault("permission_mode", context.permission_mode)

        for matcher in matchers:
            if event in _TOOL_EVENTS and not matcher.matches(tool_name):
                continue
            timeout = matcher.timeout or self._default_timeout
            for callback in matcher.hooks:
                outcome.hooks_run += 1
                try:
                    output = await self._invoke(event, callback, payload, tool_use_id, context, timeout)
                except HookError as exc:
                    logger.warning(
                        "Hook failure session=%s event=%s tool=%s: %s",
                        context.session_id[:8], event.value, tool_name, exc.reason,
                    )
                    if event == HookEvent.PRE_TOOL_USE:
                        outcome.decision = "deny"
                        outcome.reason = str(exc)
                        return outcome
                    continue

                self._fold(event, output, outcome, payload)
                if outcome.denied:
                    logger.info(
                        "Hook %s short-circuit session=%s tool=%s reason=%s",
                        event.value, context.session_id[:8], tool_name,
                        outcome.reason[:120],
                    )
                    return outcome
        return outcome

    @staticmethod
    async def _invoke(
        event: HookEvent,
        callback: HookCallback,
        payload: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
        timeout: float,
    ) -> dict[str, Any]:
        try:
            if timeout and timeout > 0:
                result = await asyncio.wait_for(
                    callback(dict(payload), tool_use_id, context), timeout=timeout,
                )
            else:
                result = await callback(dict(payload), tool_use_id, context)
        except asyncio.TimeoutError as exc:
            raise HookError(event.value, f"timed out after {timeout}s") from exc
        except Exception as exc:
            raise HookError(event.value, f"{type(exc).__name__}: {exc}") from exc
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise HookError(event.value, f"hook returned {type(result).__name__}, expected dict")
        return result

    @staticmethod
    def _fold(
        event: HookEvent,
        output: dict[str, Any],
        outcome: HookOutcome,
        payload: dict[str, Any],
    ) -> None:
        if not output:
            return

        message = output.get("systemMessage")
        if message:
            outcome.system_messages.append(str(message))

        if output.get("continue") is False:
            outcome.stop = True
            outcome.stop_reason = str(output.get("stopReason") or "Stopped by hook")

        if output.get("decision") == "block":
            outcome.decision = "block"
            outcome.reason = str(output.get("reason") or "Blocked by hook")

        specific = output.get("hookSpecificOutput") or {}
        if not isinstance(specific, dict):
            return

        context_text = specific.get("additionalContext")
        if context_text:
            outcome.additional_context.append(str(context_text))

        if event != HookEvent.PRE_TOOL_USE:
            return

        updated = specific.get("updatedInput")
        if isinstance(updated, dict):
            outcome.updated_input = dict(updated)
            payload["tool_input"] = dict(updated)

        decision = specific.get("permissionDecision")
        if decision in ("allow", "deny", "ask"):
            # A later allow never overrides an earlier ask.
            if decision == "deny" or outcome.decision is None or decision == "ask":
                outcome.decision = decision
                outcome.reason = str(
                    specific.get("permissionDecisionReason")
                    or ("Denied by hook" if decision == "deny" else "")
                )
