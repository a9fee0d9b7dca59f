"""Exception hierarchy for the agent runtime.

Specific exceptions for each failure mode. Never bare
`except Exception` without justification.
"""
from __future__ import annotations


class TetherError(Exception):
    """Base exception for all runtime errors."""


class ConfigError(TetherError):
    """Configuration file or value is invalid."""


class BackendError(TetherError):
    """A model backend failed to produce a turn."""
    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' failed: {reason}")


class BackendNotFoundError(BackendError):
    """The backend's runtime (e.g. the CLI binary) is not installed."""
    def __init__(self, backend: str, command: str):
        self.command = command
        super().__init__(
            backend,
            f"CLI binary not found: '{command}' is not installed or not on PATH",
        )


class BackendConnectionError(BackendError):
    """The backend could not be reached or returned a transport error."""


class AuthenticationError(BackendError):
    """No usable credentials for any backend, or credentials rejected."""


class SessionStateError(TetherError):
    """Operation not valid in the session's current state."""
    def __init__(self, session_id: str, state: str, operation: str):
        self.session_id = session_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} session {session_id[:8]} in state {state}"
        )


class SessionNotFoundError(TetherError):
    """No persisted session with the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ToolNotFoundError(TetherError):
    """Requested tool is not registered or not visible to the session."""
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool not available: {tool_name}")


class ToolCallTimeoutError(TetherError):
    """A single tool call exceeded its time budget."""
    def __init__(self, tool_name: str, timeout_seconds: float):
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Tool call '{tool_name}' timed out after {timeout_seconds}s"
        )


class MaxDepthExceededError(TetherError):
    """Subagent nesting exceeded the configured depth."""
    def __init__(self, agent_name: str, depth: int, max_depth: int):
        self.agent_name = agent_name
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Subagent '{agent_name}' at depth {depth} exceeds max {max_depth}"
        )


class SubagentNotFoundError(TetherError):
    """Task tool named a subagent type that is not defined."""
    def __init__(self, agent_name: str, available: list[str]):
        self.agent_name = agent_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Subagent '{agent_name}' is not defined. "
            f"Available subagents: {avail_str}"
        )


class HookError(TetherError):
    """A hook callback raised or timed out."""
    def __init__(self, event: str, reason: str):
        self.event = event
        self.reason = reason
        super().__init__(f"{event} hook failed: {reason}")


class McpBridgeError(TetherError):
    """Connecting to or calling an MCP server failed."""
    def __init__(self, server_name: str, reason: str):
        self.server_name = server_name
        self.reason = reason
        super().__init__(f"MCP server '{server_name}': {reason}")
