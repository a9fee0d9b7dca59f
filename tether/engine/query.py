"""Public entry points: one-shot ``query()`` and the stateful ``SessionClient``.

Stateless::

    async for event in query("Summarise CHANGELOG.md", SessionOptions(cwd=".")):
        if isinstance(event, AssistantText):
            print(event.text)

Stateful::

    async with SessionClient(SessionOptions(allowed_tools=["Read", "Grep"])) as client:
        await client.query("Where is the retry logic?")
        async for event in client.receive_response():
            ...
        await client.query("Now add a test for it")
        async for event in client.receive_response():
            ...
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from .backends.base import ModelBackend
from .backends.registry import BackendRegistry, build_backend_registry
from .builtin_tools import build_builtin_tools
from .command_policy import CommandPolicy
from .config import EngineConfig, SessionOptions
from .errors import SessionNotFoundError, SessionStateError
from .events import SessionEvent, SessionResult
from .mcp_bridge import McpBridge
from .models import PermissionMode, SessionState
from .permission_store import PermissionStore
from .session import AgentSession
from .session_store import SessionStore
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class PreparedSession:
    """A session plus the resources opened to build it."""
    session: AgentSession
    bridge: McpBridge
    backend_registry: BackendRegistry | None = None

    async def aclose(self) -> None:
        if self.session.state != SessionState.RUNNING:
            await self.session.close()
        await self.bridge.close()
        if self.backend_registry is not None:
            await self.backend_registry.shutdown_all()


def _default_store(config: EngineConfig, options: SessionOptions) -> SessionStore | None:
    if not (config.persist_sessions and options.persist_session):
        return None
    return SessionStore(config.session_dir)


async def prepare_session(
    options: SessionOptions | None = None,
    *,
    backend: ModelBackend | None = None,
    config: EngineConfig | None = None,
    store: SessionStore | None = None,
) -> PreparedSession:
    """Assemble tools, MCP servers, skills, backend and transcript for a session.

    Raises McpBridgeError when an MCP server cannot be reached,
    AuthenticationError when no backend is usable, and
    SessionNotFoundError for an unknown ``resume`` id.
    """
    options = options or SessionOptions()
    config = config or EngineConfig.from_env()
    cwd = str(Path(options.cwd or config.default_cwd).resolve())
    if store is None:
        store = _default_store(config, options)

    messages = None
    session_id = None
    parent_session_id = None
    resumed_from = None
    resume_id = options.resume
    if resume_id is None and options.continue_conversation and store is not None:
        latest = store.latest()
        if latest is not None:
            resume_id = latest.session_id
    record = None
    if resume_id is not None:
        if store is None:
            raise SessionNotFoundError(resume_id)
        if options.fork_session:
            record = store.fork(resume_id)
            parent_session_id = record.parent_session_id
        else:
            record = store.load(resume_id)
            parent_session_id = record.parent_session_id
        messages = record.messages
        session_id = record.session_id
        resumed_from = parent_session_id if options.fork_session else record.session_id
        logger.info(
            "Resuming session %s (fork=%s) with %d messages",
            session_id[:8], options.fork_session, len(messages),
        )

    registry = ToolRegistry(
        build_builtin_tools(cwd) if options.include_builtin_tools else None
    )
    bridge = McpBridge(options.mcp_servers)
    await bridge.start(registry)

    if options.skills is None:
        from ..skills.loader import SkillSet

        discovered = SkillSet.discover(cwd, options.skill_dirs)
        if discovered:
            options = options.copy(skills=discovered.skills())

    backend_registry = None
    try:
        if backend is None:
            backend_registry = build_backend_registry(config, config.backend_configs)
            backend = backend_registry.select(options.backend or config.default_backend)
    except Exception:
        await bridge.close()
        raise

    session = AgentSession(
        options.copy(cwd=cwd),
        backend,
        registry,
        config=config,
        store=store,
        session_id=session_id,
        messages=messages,
        parent_session_id=parent_session_id,
        resumed_from=resumed_from,
        command_policy=CommandPolicy(
            cwd,
            extra_whitelist=config.command_whitelist,
            extra_blacklist=config.command_blacklist,
        ),
        permission_store=PermissionStore.for_project(cwd),
    )
    if record is not None:
        session.usage.add(record.usage)
    return PreparedSession(session=session, bridge=bridge, backend_registry=backend_registry)


async def query(
    prompt: str,
    options: SessionOptions | None = None,
    *,
    backend: ModelBackend | None = None,
    config: EngineConfig | None = None,
    store: SessionStore | None = None,
) -> AsyncIterator[SessionEvent]:
    """Run one prompt in a fresh (or resumed) session and yield its events."""
    prepared = await prepare_session(options, backend=backend, config=config, store=store)
    try:
        async with contextlib.aclosing(prepared.session.run(prompt)) as events:
            async for event in events:
                yield event
    finally:
        await prepared.aclose()


def is_final_result(event: SessionEvent, session_id: str) -> bool:
    """True for the top-level SessionResult (not one forwarded from a subagent)."""
    return (
        isinstance(event, SessionResult)
        and event.session_id == session_id
        and event.parent_tool_use_id is None
    )


_CLOSED = object()


class SessionClient:
    """Multi-turn client: the transcript persists across ``query()`` calls.

    Each turn runs in a background task that feeds an asyncio.Queue;
    ``receive_response()`` drains it up to the turn's SessionResult.
    """

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        backend: ModelBackend | None = None,
        config: EngineConfig | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self._options = options or SessionOptions()
        self._backend = backend
        self._config = config
        self._store = store
        self._prepared: PreparedSession | None = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None

    async def __aenter__(self) -> SessionClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @property
    def session(self) -> AgentSession:
        if self._prepared is None:
            raise SessionStateError("", "disconnected", "session")
        return self._prepared.session

    @property
    def session_id(self) -> str | None:
        return self._prepared.session.session_id if self._prepared else None

    @property
    def is_connected(self) -> bool:
        return self._prepared is not None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def connect(self, prompt: str | None = None) -> None:
        if self._prepared is not None:
            return
        self._prepared = await prepare_session(
            self._options, backend=self._backend, config=self._config, store=self._store,
        )
        logger.info("SessionClient connected session=%s", self._prepared.session.session_id[:8])
        if prompt is not None:
            await self.query(prompt)

    async def query(self, prompt: str) -> None:
        """Start a turn. Raises SessionStateError while one is running."""
        session = self.session
        if self.is_running:
            raise SessionStateError(session.session_id, SessionState.RUNNING.value, "query")
        self._task = asyncio.create_task(self._pump(session, prompt))

    async def _pump(self, session: AgentSession, prompt: str) -> None:
        try:
            async for event in session.run(prompt):
                await self._queue.put(event)
        except Exception as exc:
            logger.warning("SessionClient turn failed session=%s: %s", session.session_id[:8], exc)
            await self._queue.put(exc)

    async def receive_messages(self) -> AsyncIterator[SessionEvent]:
        """Yield every event until the client disconnects."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def receive_response(self) -> AsyncIterator[SessionEvent]:
        """Yield events up to and including the current turn's SessionResult."""
        session_id = self.session.session_id
        async for event in self.receive_messages():
            yield event
            if is_final_result(event, session_id):
                return

    async def interrupt(self) -> bool:
        return self.session.interrupt()

    async def set_permission_mode(self, mode: PermissionMode | str) -> None:
        self.session.set_permission_mode(mode)

    async def set_model(self, model: str | None = None) -> None:
        self.session.set_model(model)

    async def disconnect(self) -> None:
        if self._prepared is None:
            return
        if self.is_running:
            self._prepared.session.interrupt()
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("SessionClient turn did not stop in time; cancelling")
                self._task.cancel()
        prepared, self._prepared = self._prepared, None
        await prepared.aclose()
        await self._queue.put(_CLOSED)
        logger.info("SessionClient disconnected session=%s", prepared.session.session_id[:8])
