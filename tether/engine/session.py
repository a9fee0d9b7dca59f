"""AgentSession: one agent conversation driven turn by turn.

``run(prompt)`` is an async generator of SessionEvents:

    UserPromptSubmit hooks
    loop up to max_turns:
        backend.complete(system, transcript, visible tools)
        no tool use  -> Stop / SubagentStop hooks, maybe continue
        per tool use -> PreToolUse hooks -> gateway -> run -> PostToolUse hooks
    SessionResult

The transcript is kept across runs so a session can take several
prompts. Backend failures and interrupts end the run with a
SessionResult; they never escape the generator.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .backends.base import ModelRequest
from .config import EngineConfig, EventCallback, SessionOptions, fire_event
from .errors import BackendError, SessionStateError
from .events import (
    AssistantText,
    HookMessage,
    SessionEvent,
    SessionResult,
    SessionStarted,
    SessionStateChanged,
    ToolPermissionDenied,
    ToolResultReceived,
    ToolUseRequested,
    UserPrompt,
    event_to_dict,
)
from .hooks import HookContext, HookDispatcher, HookOutcome
from .lifecycle import validate_transition
from .models import (
    ConversationMessage,
    HookEvent,
    PermissionMode,
    PermissionResultDeny,
    ResultSubtype,
    SessionRecord,
    SessionState,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    make_id,
    parse_permission_mode,
    utcnow,
)
from .subagents import TASK_TOOL_NAME, SubagentDelegator
from .tool_gateway import ToolGateway
from .tools import ToolRegistry, ToolTimeTracker, run_tool

if TYPE_CHECKING:
    from .backends.base import ModelBackend
    from .command_policy import CommandPolicy
    from .permission_store import PermissionStore
    from .session_store import SessionStore

logger = logging.getLogger(__name__)

_RESULT_STATES = {
    ResultSubtype.SUCCESS: SessionState.COMPLETED,
    ResultSubtype.BLOCKED: SessionState.COMPLETED,
    ResultSubtype.ERROR_MAX_TURNS: SessionState.FAILED,
    ResultSubtype.ERROR_DURING_EXECUTION: SessionState.FAILED,
    ResultSubtype.INTERRUPTED: SessionState.INTERRUPTED,
}


class SessionInterrupted(Exception):
    """Raised inside the loop when interrupt() was requested."""


@dataclass
class _RunOutcome:
    subtype: ResultSubtype = ResultSubtype.SUCCESS
    result: str = ""
    is_error: bool = False
    stop_reason: str | None = None
    turns: int = 0


@dataclass
class _TurnControl:
    stop_reason: str | None = None
    interrupt: bool = False


class AgentSession:
    """Owns one transcript, its tool gateway and hooks."""

    def __init__(
        self,
        options: SessionOptions,
        backend: ModelBackend,
        registry: ToolRegistry,
        *,
        config: EngineConfig | None = None,
        store: SessionStore | None = None,
        session_id: str | None = None,
        messages: list[ConversationMessage] | None = None,
        parent_session_id: str | None = None,
        resumed_from: str | None = None,
        depth: int = 0,
        agent_name: str | None = None,
        command_policy: CommandPolicy | None = None,
        permission_store: PermissionStore | None = None,
        gateway_state: ToolGateway | None = None,
        parent_tool_use_id: str | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._options = options
        self._backend = backend
        self._registry = registry
        self._store = store
        self._session_id = session_id or make_id()
        self._messages: list[ConversationMessage] = list(messages or [])
        self._parent_session_id = parent_session_id
        self._resumed_from = resumed_from
        self._depth = depth
        self._agent_name = agent_name
        self._parent_tool_use_id = parent_tool_use_id
        self._model = options.model or self._config.default_model
        self._state = SessionState.IDLE
        self._usage = Usage()
        self._num_turns = 0
        self._created_at = utcnow()
        self._title = ""
        self._started_emitted = False
        self._current_tool_use_id: str | None = None
        self._pending_results: list[ToolResultBlock] = []
        self._interrupt_event = asyncio.Event()
        self._side_events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._tracker = ToolTimeTracker()
        self._inflight: asyncio.Future | None = None
        # Nested sessions reach the callback through the parent's forwarding
        self._event_callback: EventCallback | None = (
            self._config.event_callback if depth == 0 else None
        )

        if gateway_state is not None:
            command_policy = command_policy or gateway_state.command_policy
            permission_store = permission_store or gateway_state.permission_store
        self._gateway = ToolGateway(
            registry,
            session_id=self._session_id,
            allowed_tools=options.allowed_tools,
            disallowed_tools=options.disallowed_tools,
            permission_mode=options.permission_mode or self._config.default_permission_mode,
            can_use_tool=options.can_use_tool,
            command_policy=command_policy,
            permission_store=permission_store,
            always_allowed_tools=(
                gateway_state.always_allowed_tools if gateway_state is not None else None
            ),
            agent_name=agent_name,
        )
        self._hooks = HookDispatcher(
            options.hooks, default_timeout=self._config.hook_timeout_seconds,
        )

        self._skills = None
        if options.skills:
            from ..skills.loader import SKILL_TOOL_NAME, SkillSet

            self._skills = SkillSet(options.skills)
            if SKILL_TOOL_NAME not in registry:
                registry.register(self._skills.build_tool())

        self._delegator: SubagentDelegator | None = None
        if options.agents:
            self._delegator = SubagentDelegator(self, options.agents)
            if TASK_TOOL_NAME not in registry:
                registry.register(self._delegator.build_tool())

    # ── Properties ──

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def model(self) -> str:
        return self._model

    @property
    def backend(self) -> ModelBackend:
        return self._backend

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def gateway(self) -> ToolGateway:
        return self._gateway

    @property
    def hooks(self) -> HookDispatcher:
        return self._hooks

    @property
    def options(self) -> SessionOptions:
        return self._options

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    @property
    def usage(self) -> Usage:
        return self._usage

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def permission_mode(self) -> PermissionMode:
        return self._gateway.permission_mode

    @property
    def max_turns(self) -> int:
        return self._options.max_turns or self._config.max_turns

    @property
    def max_subagent_depth(self) -> int:
        if self._options.max_subagent_depth is not None:
            return self._options.max_subagent_depth
        return self._config.max_subagent_depth

    @property
    def tool_call_timeout(self) -> float:
        if self._options.tool_call_timeout is not None:
            return self._options.tool_call_timeout
        return self._config.tool_call_timeout_seconds

    @property
    def current_tool_use_id(self) -> str | None:
        return self._current_tool_use_id

    @property
    def system_prompt(self) -> str:
        parts = [self._options.system_prompt or ""]
        if self._skills:
            parts.append(self._skills.catalog())
        return "\n\n".join(p for p in parts if p).strip()

    # ── Control ──

    def interrupt(self) -> bool:
        """Request the running turn to stop. Returns False when idle."""
        if self._state != SessionState.RUNNING:
            return False
        logger.info("Session %s: interrupt requested", self._session_id[:8])
        self._interrupt_event.set()
        return True

    def set_permission_mode(self, mode: PermissionMode | str) -> None:
        self._gateway.permission_mode = parse_permission_mode(mode)

    def set_model(self, model: str | None) -> None:
        new_model = model or self._config.default_model
        logger.info(
            "Session %s: model %s -> %s", self._session_id[:8], self._model, new_model,
        )
        self._model = new_model

    async def forward_event(self, event: SessionEvent) -> None:
        """Queue an event from a nested session for this session's stream."""
        await self._side_events.put(event)

    async def close(self) -> None:
        if self._state == SessionState.CLOSED:
            return
        if self._state == SessionState.RUNNING:
            raise SessionStateError(self._session_id, self._state.value, "close")
        await self._transition(SessionState.CLOSED)

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            session_id=self._session_id,
            model=self._model,
            messages=list(self._messages),
            parent_session_id=self._parent_session_id,
            created_at=self._created_at,
            usage=Usage(self._usage.input_tokens, self._usage.output_tokens),
            num_turns=self._num_turns,
            title=self._title,
        )

    # ── Internals ──

    async def _publish(self, event: SessionEvent) -> SessionEvent:
        if not event.session_id:
            event.session_id = self._session_id
        if event.parent_tool_use_id is None and self._parent_tool_use_id:
            event.parent_tool_use_id = self._parent_tool_use_id
        await fire_event(self._event_callback, event_to_dict(event))
        return event

    async def _transition(self, new_state: SessionState) -> SessionStateChanged:
        """Transition to a new state with validation."""
        validate_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.info(
            "Session %s: %s -> %s", self._session_id[:8], old.value, new_state.value,
        )
        return await self._publish(SessionStateChanged(
            old_state=old.value, new_state=new_state.value,
        ))

    def _hook_context(self) -> HookContext:
        return HookContext(
            session_id=self._session_id,
            cwd=self._options.cwd or self._config.default_cwd,
            permission_mode=self._gateway.permission_mode.value,
            agent_name=self._agent_name,
            depth=self._depth,
        )

    async def _hook_messages(self, event: HookEvent, outcome: HookOutcome):
        for message in outcome.system_messages:
            yield await self._publish(HookMessage(hook_event=event.value, message=message))

    def _check_interrupt(self) -> None:
        if self._interrupt_event.is_set():
            raise SessionInterrupted()

    async def _watch(self, task: asyncio.Future) -> AsyncIterator[SessionEvent]:
        """Yield forwarded events until *task* finishes.

        Cancels *task* and raises SessionInterrupted if interrupt()
        is called first.
        """
        interrupt_wait = asyncio.ensure_future(self._interrupt_event.wait())
        self._inflight = task
        try:
            while True:
                getter = asyncio.ensure_future(self._side_events.get())
                done, _ = await asyncio.wait(
                    {task, getter, interrupt_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter in done:
                    yield await self._publish(getter.result())
                    continue
                getter.cancel()
                if task in done:
                    break
                if interrupt_wait in done:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                    raise SessionInterrupted()
            while not self._side_events.empty():
                yield await self._publish(self._side_events.get_nowait())
        finally:
            self._inflight = None
            interrupt_wait.cancel()
            if not task.done():
                task.cancel()

    def _persist(self) -> None:
        if self._store is None or not self._options.persist_session:
            return
        try:
            self._store.save(self.to_record())
        except OSError as exc:
            logger.warning("Session %s: persist failed: %s", self._session_id[:8], exc)

    def _close_dangling_tool_uses(self, reason: str) -> None:
        """Give every unanswered tool_use a result so the transcript stays valid."""
        if not self._messages or self._messages[-1].role != "assistant":
            return
        answered = {r.tool_use_id for r in self._pending_results}
        results = list(self._pending_results)
        for tool_use in self._messages[-1].tool_uses:
            if tool_use.id not in answered:
                results.append(ToolResultBlock(
                    tool_use_id=tool_use.id, content=reason, is_error=True,
                ))
        if results:
            self._messages.append(ConversationMessage(role="user", content=results))
        self._pending_results = []

    def _abandon_run(self) -> None:
        """The consumer stopped iterating mid-run; settle as interrupted without events."""
        logger.info("Session %s: run abandoned by consumer", self._session_id[:8])
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        self._close_dangling_tool_uses("Interrupted: run abandoned")
        self._current_tool_use_id = None
        self._persist()
        if self._state == SessionState.RUNNING:
            validate_transition(self._state, SessionState.INTERRUPTED)
            self._state = SessionState.INTERRUPTED

    # ── Main loop ──

    async def run(self, prompt: str) -> AsyncIterator[SessionEvent]:
        """Run one prompt to completion, yielding events."""
        if self._state in (SessionState.RUNNING, SessionState.CLOSED):
            raise SessionStateError(self._session_id, self._state.value, "run")

        self._interrupt_event.clear()
        started = time.monotonic()
        outcome = _RunOutcome()
        if not self._title:
            self._title = prompt.strip().splitlines()[0][:80] if prompt.strip() else ""

        if not self._started_emitted:
            self._started_emitted = True
            yield await self._publish(SessionStarted(
                model=self._model,
                backend=self._backend.name,
                tools=[t.name for t in self._gateway.visible_tools()],
                permission_mode=self._gateway.permission_mode.value,
                resumed_from=self._resumed_from,
            ))
        tool_time_before = self._tracker.accumulated_tool_time
        try:
            yield await self._transition(SessionState.RUNNING)
            async with contextlib.aclosing(self._loop(prompt, outcome)) as events:
                async for event in events:
                    yield event
        except SessionInterrupted:
            logger.info("Session %s: interrupted", self._session_id[:8])
            self._close_dangling_tool_uses("Interrupted by user")
            outcome.subtype = ResultSubtype.INTERRUPTED
            outcome.is_error = True
            outcome.stop_reason = "interrupted"
        except BackendError as exc:
            logger.warning("Session %s: backend failure: %s", self._session_id[:8], exc)
            self._close_dangling_tool_uses(f"Session failed: {exc}")
            outcome.subtype = ResultSubtype.ERROR_DURING_EXECUTION
            outcome.is_error = True
            outcome.result = str(exc)
        except Exception as exc:
            logger.exception("Session %s: unexpected error", self._session_id[:8])
            self._close_dangling_tool_uses(f"Session failed: {exc}")
            outcome.subtype = ResultSubtype.ERROR_DURING_EXECUTION
            outcome.is_error = True
            outcome.result = f"{type(exc).__name__}: {exc}"
        except (GeneratorExit, asyncio.CancelledError):
            self._abandon_run()
            raise

        self._persist()
        self._current_tool_use_id = None
        yield await self._transition(_RESULT_STATES[outcome.subtype])
        duration = time.monotonic() - started
        logger.info(
            "Session %s: result subtype=%s turns=%d duration=%.1fs tokens=%d",
            self._session_id[:8], outcome.subtype.value, outcome.turns,
            duration, self._usage.total_tokens,
        )
        yield await self._publish(SessionResult(
            subtype=outcome.subtype.value,
            result=outcome.result,
            is_error=outcome.is_error,
            num_turns=outcome.turns,
            duration_seconds=duration,
            usage=self._usage.to_dict(),
            stop_reason=outcome.stop_reason,
            tool_seconds=self._tracker.accumulated_tool_time - tool_time_before,
        ))

    async def _loop(self, prompt: str, outcome: _RunOutcome) -> AsyncIterator[SessionEvent]:
        context = self._hook_context()
        submit = await self._hooks.dispatch(
            HookEvent.USER_PROMPT_SUBMIT, {"prompt": prompt}, context,
        )
        async for event in self._hook_messages(HookEvent.USER_PROMPT_SUBMIT, submit):
            yield event
        if submit.denied:
            logger.info("Session %s: prompt blocked by hook", self._session_id[:8])
            outcome.subtype = ResultSubtype.BLOCKED
            outcome.is_error = True
            outcome.result = submit.reason
            outcome.stop_reason = "blocked"
            return

        extra = list(submit.additional_context)
        if self._skills:
            for skill in self._skills.match_triggers(prompt):
                logger.info("Session %s: skill preloaded %s", self._session_id[:8], skill.name)
                extra.append(skill.render())
        text = "\n\n".join([prompt, *extra])
        self._messages.append(ConversationMessage(role="user", content=[TextBlock(text=text)]))
        yield await self._publish(UserPrompt(text=prompt))
        if submit.stop:
            outcome.stop_reason = submit.stop_reason
            return

        stop_event = HookEvent.SUBAGENT_STOP if self._depth else HookEvent.STOP
        stop_hook_active = False
        while True:
            if outcome.turns >= self.max_turns:
                logger.info(
                    "Session %s: max turns reached (%d)", self._session_id[:8], self.max_turns,
                )
                self._close_dangling_tool_uses("Max turns reached")
                outcome.subtype = ResultSubtype.ERROR_MAX_TURNS
                outcome.is_error = True
                outcome.stop_reason = "max_turns"
                return
            self._check_interrupt()

            request = ModelRequest(
                model=self._model,
                messages=list(self._messages),
                system=self.system_prompt,
                tools=[t.schema() for t in self._gateway.visible_tools()],
                max_tokens=self._config.max_tokens,
            )
            task = asyncio.ensure_future(self._backend.complete(request))
            async for event in self._watch(task):
                yield event
            turn = task.result()

            outcome.turns += 1
            self._num_turns += 1
            self._usage.add(turn.usage)
            self._messages.append(ConversationMessage(role="assistant", content=list(turn.content)))
            for block in turn.content:
                if isinstance(block, TextBlock) and block.text:
                    yield await self._publish(AssistantText(text=block.text, model=turn.model or self._model))
            if turn.text:
                outcome.result = turn.text
            self._persist()

            tool_uses = turn.tool_uses
            if not tool_uses:
                stopping = await self._hooks.dispatch(
                    stop_event,
                    {"stop_hook_active": stop_hook_active, "last_assistant_message": turn.text},
                    context,
                )
                async for event in self._hook_messages(stop_event, stopping):
                    yield event
                if stopping.stop:
                    outcome.stop_reason = stopping.stop_reason
                    return
                if stopping.denied:
                    logger.info(
                        "Session %s: %s hook continued the run: %s",
                        self._session_id[:8], stop_event.value, stopping.reason[:120],
                    )
                    stop_hook_active = True
                    self._messages.append(ConversationMessage(
                        role="user", content=[TextBlock(text=stopping.reason)],
                    ))
                    continue
                outcome.stop_reason = turn.stop_reason
                return

            control = _TurnControl()
            self._pending_results = []
            for tool_use in tool_uses:
                if control.stop_reason is not None or control.interrupt:
                    break
                async for event in self._process_tool_use(tool_use, control):
                    yield event
            self._close_dangling_tool_uses("Skipped: session stopped")
            self._persist()
            if control.interrupt:
                raise SessionInterrupted()
            if control.stop_reason is not None:
                outcome.stop_reason = control.stop_reason
                return

    async def _process_tool_use(
        self, tool_use: ToolUseBlock, control: _TurnControl,
    ) -> AsyncIterator[SessionEvent]:
        name = tool_use.name
        self._current_tool_use_id = tool_use.id
        yield await self._publish(ToolUseRequested(
            tool_use_id=tool_use.id, tool_name=name, input=dict(tool_use.input),
        ))

        if self._gateway.is_disallowed(name):
            reason = f"Tool '{name}' is disallowed for this session"
            async for event in self._deny(tool_use, reason, "disallowed"):
                yield event
            return

        context = self._hook_context()
        pre = await self._hooks.dispatch(
            HookEvent.PRE_TOOL_USE,
            {"tool_name": name, "tool_input": dict(tool_use.input)},
            context,
            tool_use_id=tool_use.id,
        )
        async for event in self._hook_messages(HookEvent.PRE_TOOL_USE, pre):
            yield event
        if pre.stop:
            control.stop_reason = pre.stop_reason

        effective = ToolUseBlock(
            id=tool_use.id,
            name=name,
            input=dict(pre.updated_input) if pre.updated_input is not None else dict(tool_use.input),
        )
        decision = await self._gateway.authorize(
            effective, hook_decision=pre.decision, hook_reason=pre.reason,
        )
        if isinstance(decision, PermissionResultDeny):
            async for event in self._deny(tool_use, decision.message, "hook" if pre.denied else "permission"):
                yield event
            if decision.interrupt:
                control.interrupt = True
            return
        if decision.updated_input is not None:
            effective.input = dict(decision.updated_input)

        tool_def = self._registry.get(name)
        started = time.monotonic()
        task = asyncio.ensure_future(run_tool(
            tool_def, effective.input, timeout=self.tool_call_timeout, tracker=self._tracker,
        ))
        async for event in self._watch(task):
            yield event
        content, is_error = task.result()
        duration = time.monotonic() - started

        post = await self._hooks.dispatch(
            HookEvent.POST_TOOL_USE,
            {
                "tool_name": name,
                "tool_input": dict(effective.input),
                "tool_response": {"content": content, "is_error": is_error},
            },
            context,
            tool_use_id=tool_use.id,
        )
        async for event in self._hook_messages(HookEvent.POST_TOOL_USE, post):
            yield event
        if post.stop:
            control.stop_reason = post.stop_reason
        feedback = list(post.additional_context)
        if post.denied and post.reason:
            feedback.append(post.reason)
        if feedback:
            content = "\n\n".join([content, *feedback])

        self._pending_results.append(ToolResultBlock(
            tool_use_id=tool_use.id, content=content, is_error=is_error,
        ))
        yield await self._publish(ToolResultReceived(
            tool_use_id=tool_use.id,
            tool_name=name,
            content=content,
            is_error=is_error,
            duration_seconds=duration,
        ))

    async def _deny(
        self, tool_use: ToolUseBlock, reason: str, source: str,
    ) -> AsyncIterator[SessionEvent]:
        yield await self._publish(ToolPermissionDenied(
            tool_use_id=tool_use.id, tool_name=tool_use.name, reason=reason, source=source,
        ))
        self._pending_results.append(ToolResultBlock(
            tool_use_id=tool_use.id, content=reason, is_error=True,
        ))
        yield await self._publish(ToolResultReceived(
            tool_use_id=tool_use.id, tool_name=tool_use.name, content=reason, is_error=True,
        ))
