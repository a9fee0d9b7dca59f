"""Backend registry and authentication-based backend selection."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import AuthenticationError, ConfigError
from .base import ModelBackend

if TYPE_CHECKING:
    from ..config import EngineConfig
    from ..yaml_config import BackendConfig

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Registry of model backends keyed by short name."""

    def __init__(self) -> None:
        self._backends: dict[str, ModelBackend] = {}

    def register(self, name: str, backend: ModelBackend) -> None:
        self._backends[name] = backend
        logger.info(
            "Backend registered: %s (available=%s)",
            name, backend.is_available(),
        )

    def get(self, name: str) -> ModelBackend | None:
        return self._backends.get(name)

    def get_or_raise(self, name: str) -> ModelBackend:
        backend = self._backends.get(name)
        if backend is None:
            available = ", ".join(self._backends) or "none"
            raise ConfigError(f"Unknown backend '{name}'. Available: {available}")
        return backend

    def list_names(self) -> list[str]:
        return list(self._backends)

    def select(self, preferred: str | None = None) -> ModelBackend:
        """Pick a backend by name, else the first available one.

        Registration order is the preference order, so API-key auth
        wins over CLI auth when both are configured.
        """
        if preferred:
            return self.get_or_raise(preferred)
        for name, backend in self._backends.items():
            if backend.is_available():
                logger.info("Backend auto-selected: %s", name)
                return backend
        raise AuthenticationError(
            "auto",
            "no usable credentials: set an API key environment variable "
            "or install and log in to the claude CLI",
        )

    async def shutdown_all(self) -> None:
        for name, backend in self._backends.items():
            try:
                await backend.shutdown()
            except Exception as exc:
                logger.error("Error shutting down backend '%s': %s", name, exc)


def build_backend_registry(
    config: EngineConfig,
    backend_configs: dict[str, BackendConfig] | None = None,
) -> BackendRegistry:
    """Build a registry from YAML backend configs, or the defaults.

    Defaults: ``anthropic`` (API key) then ``claude-cli`` (OAuth).
    """
    from .anthropic_backend import AnthropicBackend
    from .claude_cli import ClaudeCliBackend
    from .scripted import ScriptedBackend

    registry = BackendRegistry()

    if not backend_configs:
        registry.register("anthropic", AnthropicBackend(
            api_key_env=config.api_key_env,
            base_url=config.anthropic_base_url,
        ))
        registry.register("claude-cli", ClaudeCliBackend(command=config.claude_command))
        return registry

    for name, cfg in backend_configs.items():
        if cfg.type == "anthropic":
            registry.register(name, AnthropicBackend(
                api_key_env=cfg.api_key_env or config.api_key_env,
                base_url=cfg.base_url or config.anthropic_base_url,
            ))
        elif cfg.type == "claude-cli":
            registry.register(name, ClaudeCliBackend(
                command=cfg.command or config.claude_command,
            ))
        elif cfg.type == "scripted":
            registry.register(name, ScriptedBackend())
        else:
            logger.warning(
                "Unknown backend type '%s' for '%s', skipping", cfg.type, name,
            )
    return registry
