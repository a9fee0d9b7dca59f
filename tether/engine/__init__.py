"""tether: agent sessions with tool permissions, hooks, subagents and MCP tools."""
from .models import (
    AgentDefinition,
    ConversationMessage,
    HookEvent,
    PermissionMode,
    PermissionResultAllow,
    PermissionResultDeny,
    RememberScope,
    ResultSubtype,
    SessionRecord,
    SessionState,
    TextBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from .config import EngineConfig, SessionOptions
from .errors import (
    AuthenticationError,
    BackendConnectionError,
    BackendError,
    BackendNotFoundError,
    ConfigError,
    HookError,
    MaxDepthExceededError,
    McpBridgeError,
    SessionNotFoundError,
    SessionStateError,
    SubagentNotFoundError,
    TetherError,
    ToolCallTimeoutError,
    ToolNotFoundError,
)
from .events import (
    AssistantText,
    HookMessage,
    SessionEvent,
    SessionResult,
    SessionStarted,
    SessionStateChanged,
    SubagentFinished,
    SubagentStarted,
    ToolPermissionDenied,
    ToolResultReceived,
    ToolUseRequested,
    UserPrompt,
)
from .hooks import HookContext, HookMatcher
from .tools import Tool, ToolRegistry, error_result, text_result, tool

__all__ = [
    # Entry points (lazy import to avoid circular deps)
    "query",
    "SessionClient",
    "AgentSession",
    # Models
    "AgentDefinition",
    "ConversationMessage",
    "HookEvent",
    "PermissionMode",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "RememberScope",
    "ResultSubtype",
    "SessionRecord",
    "SessionState",
    "TextBlock",
    "ToolPermissionContext",
    "ToolResultBlock",
    "ToolUseBlock",
    "Usage",
    # Config
    "EngineConfig",
    "SessionOptions",
    # Events
    "AssistantText",
    "HookMessage",
    "SessionEvent",
    "SessionResult",
    "SessionStarted",
    "SessionStateChanged",
    "SubagentFinished",
    "SubagentStarted",
    "ToolPermissionDenied",
    "ToolResultReceived",
    "ToolUseRequested",
    "UserPrompt",
    # Hooks and tools
    "HookContext",
    "HookMatcher",
    "Tool",
    "ToolRegistry",
    "error_result",
    "text_result",
    "tool",
    # MCP (lazy import)
    "create_sdk_mcp_server",
    "McpBridge",
    # YAML config (lazy import)
    "TetherConfig",
    "load_yaml_config",
    # Backends (lazy import)
    "ModelBackend",
    "BackendRegistry",
    "ScriptedBackend",
    # Persistence (lazy import)
    "SessionStore",
    # Errors
    "AuthenticationError",
    "BackendConnectionError",
    "BackendError",
    "BackendNotFoundError",
    "ConfigError",
    "HookError",
    "MaxDepthExceededError",
    "McpBridgeError",
    "SessionNotFoundError",
    "SessionStateError",
    "SubagentNotFoundError",
    "TetherError",
    "ToolCallTimeoutError",
    "ToolNotFoundError",
]


def __getattr__(name: str):
    if name == "query":
        from .query import query
        return query
    if name == "SessionClient":
        from .query import SessionClient
        return SessionClient
    if name == "AgentSession":
        from .session import AgentSession
        return AgentSession
    if name == "create_sdk_mcp_server":
        from .mcp_bridge import create_sdk_mcp_server
        return create_sdk_mcp_server
    if name == "McpBridge":
        from .mcp_bridge import McpBridge
        return McpBridge
    if name == "TetherConfig":
        from .yaml_config import TetherConfig
        return TetherConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ModelBackend":
        from .backends.base import ModelBackend
        return ModelBackend
    if name == "BackendRegistry":
        from .backends.registry import BackendRegistry
        return BackendRegistry
    if name == "ScriptedBackend":
        from .backends.scripted import ScriptedBackend
        return ScriptedBackend
    if name == "SessionStore":
        from .session_store import SessionStore
        return SessionStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
