"""Subagent delegation through the ``Task`` tool.

The parent model calls::

    Task({"description": "Audit deps", "prompt": "...", "subagent_type": "auditor"})

and the delegator runs a nested AgentSession built from the matching
AgentDefinition. The child gets a fresh transcript, its own tool
scope and model, and the parent's hooks and permission callback.
Its events are forwarded to the parent tagged with the Task call's
tool_use_id; its final text becomes the Task tool result.
"""
from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

from .errors import MaxDepthExceededError, SubagentNotFoundError
from .events import SessionResult, SubagentFinished, SubagentStarted
from .models import AgentDefinition
from .tools import Tool, ToolRegistry, error_result, text_result

if TYPE_CHECKING:
    from .session import AgentSession

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "Task"
INHERIT_MODEL = "inherit"


def _task_schema(agents: dict[str, AgentDefinition]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "description": {
                "type": "string",
                "description": "Short (3-5 word) description of the task",
            },
            "prompt": {
                "type": "string",
                "description": "The task for the subagent to perform",
            },
            "subagent_type": {
                "type": "string",
                "enum": sorted(agents),
                "description": "Which subagent to use",
            },
        },
        "required": ["description", "prompt", "subagent_type"],
    }


def _task_description(agents: dict[str, AgentDefinition]) -> str:
    lines = [
        "Launch a subagent to handle a task autonomously. "
        "The subagent starts with no memory of this conversation, "
        "so the prompt must be self-contained.",
        "",
        "Available subagents:",
    ]
    for name, definition in sorted(agents.items()):
        lines.append(f"- {name}: {definition.description}")
    return "\n".join(lines)


class SubagentDelegator:
    """Builds the Task tool for a session and runs child sessions."""

    def __init__(self, parent: AgentSession, agents: dict[str, AgentDefinition]) -> None:
        self._parent = parent
        self._agents = dict(agents)

    @property
    def agents(self) -> dict[str, AgentDefinition]:
        return dict(self._agents)

    def build_tool(self) -> Tool:
        return Tool(
            name=TASK_TOOL_NAME,
            description=_task_description(self._agents),
            input_schema=_task_schema(self._agents),
            handler=self._handle,
            # Delegation itself is harmless; the child's tools go
            # through the child's own gateway.
            read_only=True,
        )

    def resolve(self, subagent_type: str) -> AgentDefinition:
        definition = self._agents.get(subagent_type)
        if definition is None:
            raise SubagentNotFoundError(subagent_type, sorted(self._agents))
        return definition

    def child_tool_names(self, definition: AgentDefinition) -> list[str]:
        """Tools the child may see: the definition's list, or the parent's minus Task."""
        parent_visible = [t.name for t in self._parent.gateway.visible_tools()]
        if definition.tools is None:
            return [n for n in parent_visible if n != TASK_TOOL_NAME]
        return list(definition.tools)

    def child_model(self, definition: AgentDefinition) -> str:
        if not definition.model or definition.model == INHERIT_MODEL:
            return self._parent.model
        return definition.model

    def _child_registry(self, names: list[str]) -> ToolRegistry:
        parent_registry = self._parent.registry
        registry = ToolRegistry()
        for name in names:
            if name == TASK_TOOL_NAME:
                # The child session registers a Task tool bound to itself
                continue
            tool_def = parent_registry.get(name)
            if tool_def is None:
                logger.warning("Subagent tool %s not registered in parent; skipping", name)
                continue
            registry.register(tool_def)
        return registry

    async def _handle(self, args: dict[str, Any]) -> dict[str, Any]:
        from .session import AgentSession

        parent = self._parent
        subagent_type = args.get("subagent_type", "")
        try:
            definition = self.resolve(subagent_type)
        except SubagentNotFoundError as exc:
            return error_result(str(exc))

        depth = parent.depth + 1
        if depth > parent.max_subagent_depth:
            exc = MaxDepthExceededError(subagent_type, depth, parent.max_subagent_depth)
            logger.warning("Subagent refused: %s", exc)
            return error_result(str(exc))

        tool_use_id = parent.current_tool_use_id
        names = self.child_tool_names(definition)
        options = parent.options.copy(
            system_prompt=definition.prompt,
            model=self.child_model(definition),
            allowed_tools=names,
            permission_mode=definition.permission_mode or parent.permission_mode,
            # Child delegation needs its own agents only if Task is in scope
            agents=parent.options.agents if TASK_TOOL_NAME in names else None,
            mcp_servers={},
            skills=None,
            resume=None,
            fork_session=False,
            continue_conversation=False,
            persist_session=False,
        )
        child = AgentSession(
            options,
            parent.backend,
            self._child_registry(names),
            config=parent.config,
            depth=depth,
            agent_name=subagent_type,
            gateway_state=parent.gateway,
            parent_tool_use_id=tool_use_id,
        )
        logger.info(
            "Subagent start parent=%s child=%s type=%s depth=%d tools=%d",
            parent.session_id[:8], child.session_id[:8], subagent_type, depth, len(names),
        )
        await parent.forward_event(SubagentStarted(
            session_id=parent.session_id,
            parent_tool_use_id=tool_use_id,
            agent_name=subagent_type,
            child_session_id=child.session_id,
            description=str(args.get("description", "")),
            depth=depth,
        ))

        result: SessionResult | None = None
        try:
            async for event in child.run(str(args.get("prompt", ""))):
                if event.parent_tool_use_id is None:
                    event.parent_tool_use_id = tool_use_id
                await parent.forward_event(event)
                if isinstance(event, SessionResult) and event.session_id == child.session_id:
                    result = event
        finally:
            parent.usage.add(child.usage)
            await child.close()

        is_error = result is None or result.is_error
        await parent.forward_event(SubagentFinished(
            session_id=parent.session_id,
            parent_tool_use_id=tool_use_id,
            agent_name=subagent_type,
            child_session_id=child.session_id,
            is_error=is_error,
        ))
        logger.info(
            "Subagent end child=%s subtype=%s turns=%d",
            child.session_id[:8],
            result.subtype if result else "none",
            result.num_turns if result else 0,
        )
        if result is None:
            return error_result(f"Subagent '{subagent_type}' produced no result")
        if result.is_error:
            return error_result(
                f"Subagent '{subagent_type}' ended with {result.subtype}: {result.result}"
            )
        return text_result(result.result)
