"""Model backends: pluggable completions for the session loop."""
from .base import ModelBackend, ModelRequest, ModelTurn
from .registry import BackendRegistry, build_backend_registry
from .scripted import ScriptedBackend, text_turn, tool_turn

__all__ = [
    "BackendRegistry",
    "ModelBackend",
    "ModelRequest",
    "ModelTurn",
    "ScriptedBackend",
    "build_backend_registry",
    "text_turn",
    "tool_turn",
]
