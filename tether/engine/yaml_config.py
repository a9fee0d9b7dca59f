"""YAML configuration loader.

Loads ``tether.yaml`` (or ``.tether/tether.yaml``) on top of the
TETHER_* environment defaults. Every section is optional.

Example YAML:
    engine:
      default_model: claude-sonnet-4-5
      max_turns: 30
      tool_call_timeout_seconds: 300
      command_blacklist: ["\\bdocker\\s+rm\\b"]

    backends:
      anthropic:
        type: anthropic
        api_key_env: ANTHROPIC_API_KEY
      cli:
        type: claude-cli
        command: claude

    models:
      fast: claude-haiku-4-5

    defaults:
      model: fast
      backend: anthropic
      cwd: /path/to/project
      system_prompt: You are a careful release engineer.

    permissions:
      mode: acceptEdits
      allowed_tools: [Read, Grep, Glob, Edit, "mcp__github__*"]
      disallowed_tools: [Bash]

    agents:
      auditor:
        description: Reviews dependency manifests
        prompt: |
          You audit dependency files and report risky pins.
        tools: [Read, Grep, Glob]
        model: inherit

    mcp_servers:
      github:
        type: http
        url: https://mcp.github.com/v1
        headers:
          Authorization: "Bearer ${GITHUB_TOKEN}"

    skills:
      dirs: [./docs/skills]
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, SessionOptions
from .errors import ConfigError
from .models import AgentDefinition, PermissionMode, parse_permission_mode

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("tether.yaml", "tether.yml", ".tether/tether.yaml")

# Short names for the current model families
_BUILTIN_MODEL_ALIASES: dict[str, str] = {
    "sonnet": "claude-sonnet-4-5",
    "opus": "claude-opus-4-1",
    "haiku": "claude-haiku-4-5",
}


@dataclass
class BackendConfig:
    """Configuration for a single model backend."""
    type: str  # "anthropic", "claude-cli" or "scripted"
    api_key_env: str | None = None
    command: str | None = None  # for claude-cli: path to CLI binary
    base_url: str | None = None


@dataclass
class DefaultsConfig:
    model: str | None = None  # alias from models section, or a model id
    backend: str | None = None
    cwd: str | None = None
    system_prompt: str | None = None
    max_turns: int | None = None


@dataclass
class PermissionsConfig:
    mode: PermissionMode | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)


@dataclass
class TetherConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    backends: dict[str, BackendConfig] = field(default_factory=dict)
    models: dict[str, str] = field(default_factory=dict)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    skill_dirs: list[str] = field(default_factory=list)
    source: Path | None = None

    def resolve_model(self, alias: str | None) -> str | None:
        return resolve_model_alias(alias, self.models)

    def to_session_options(self, **overrides: Any) -> SessionOptions:
        """Build SessionOptions from the defaults/permissions/agents sections.

        Keyword overrides (typically CLI flags) win when not None.
        """
        options = SessionOptions(
            system_prompt=self.defaults.system_prompt,
            model=self.resolve_model(self.defaults.model),
            backend=self.defaults.backend,
            cwd=self.defaults.cwd,
            allowed_tools=list(self.permissions.allowed_tools),
            disallowed_tools=list(self.permissions.disallowed_tools),
            permission_mode=self.permissions.mode,
            agents=dict(self.agents) or None,
            mcp_servers=dict(self.mcp_servers),
            skill_dirs=list(self.skill_dirs),
            max_turns=self.defaults.max_turns,
        )
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "model" in changes:
            changes["model"] = self.resolve_model(changes["model"])
        return options.copy(**changes) if changes else options


def resolve_model_alias(alias: str | None, models: dict[str, str] | None = None) -> str | None:
    """Resolve a model alias to a model id.

    Resolution order:
    1. YAML ``models:`` section
    2. Built-in family aliases (``sonnet``, ``opus``, ``haiku``)
    3. Falls back to treating *alias* as a raw model id
    """
    if not alias:
        return alias
    if models and alias in models:
        return models[alias]
    return _BUILTIN_MODEL_ALIASES.get(alias, alias)


def find_config_file(cwd: str | Path) -> Path | None:
    base = Path(cwd)
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a mapping, got {type(value).__name__}")
    return value


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return [str(v) for v in value]


def _build_engine(engine_raw: dict[str, Any], base: EngineConfig) -> EngineConfig:
    skipped = {"event_callback", "backend_configs"}
    known = {f.name for f in fields(EngineConfig)} - skipped
    unknown = sorted(set(engine_raw) - known)
    if unknown:
        logger.warning("Ignoring unknown engine keys: %s", ", ".join(unknown))
    values: dict[str, Any] = {}
    for f in fields(EngineConfig):
        if f.name not in engine_raw or f.name in skipped:
            continue
        raw_value = engine_raw[f.name]
        current = getattr(base, f.name)
        try:
            if f.name == "default_permission_mode":
                values[f.name] = parse_permission_mode(raw_value)
            elif isinstance(current, bool):
                values[f.name] = bool(raw_value)
            elif isinstance(current, int):
                values[f.name] = int(raw_value)
            elif isinstance(current, float):
                values[f.name] = float(raw_value)
            elif isinstance(current, list):
                values[f.name] = _string_list(raw_value, f"engine.{f.name}")
            else:
                values[f.name] = raw_value
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"engine.{f.name}: {exc}") from exc
    return replace(base, **values)


def _parse_agent(name: str, cfg: Any) -> AgentDefinition:
    if not isinstance(cfg, dict):
        raise ConfigError(f"agents.{name} must be a mapping")
    if not cfg.get("description") or not cfg.get("prompt"):
        raise ConfigError(f"agents.{name} requires 'description' and 'prompt'")
    tools = cfg.get("tools")
    mode = cfg.get("permission_mode")
    return AgentDefinition(
        description=str(cfg["description"]),
        prompt=str(cfg["prompt"]),
        tools=_string_list(tools, f"agents.{name}.tools") if tools is not None else None,
        model=cfg.get("model"),
        permission_mode=parse_permission_mode(mode) if mode else None,
    )


def parse_config(raw: dict[str, Any], *, base: EngineConfig | None = None) -> TetherConfig:
    """Build a TetherConfig from an already-parsed YAML mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("top level must be a mapping")
    engine = _build_engine(_section(raw, "engine"), base or EngineConfig.from_env())

    backends: dict[str, BackendConfig] = {}
    for name, cfg in _section(raw, "backends").items():
        cfg = cfg or {}
        backends[name] = BackendConfig(
            type=cfg.get("type", name),
            api_key_env=cfg.get("api_key_env"),
            command=cfg.get("command"),
            base_url=cfg.get("base_url"),
        )
    if backends:
        engine = replace(engine, backend_configs=backends)

    models = {str(k): str(v) for k, v in _section(raw, "models").items()}

    defaults_raw = _section(raw, "defaults")
    max_turns = defaults_raw.get("max_turns")
    defaults = DefaultsConfig(
        model=defaults_raw.get("model"),
        backend=defaults_raw.get("backend"),
        cwd=defaults_raw.get("cwd"),
        system_prompt=defaults_raw.get("system_prompt"),
        max_turns=int(max_turns) if max_turns is not None else None,
    )

    perms_raw = _section(raw, "permissions")
    mode = perms_raw.get("mode")
    permissions = PermissionsConfig(
        mode=parse_permission_mode(mode) if mode else None,
        allowed_tools=_string_list(perms_raw.get("allowed_tools"), "permissions.allowed_tools"),
        disallowed_tools=_string_list(
            perms_raw.get("disallowed_tools"), "permissions.disallowed_tools",
        ),
    )

    agents = {
        str(name): _parse_agent(str(name), cfg)
        for name, cfg in _section(raw, "agents").items()
    }
    for name, agent in agents.items():
        if agent.model and agent.model != "inherit":
            agent.model = resolve_model_alias(agent.model, models)

    mcp_servers = {
        str(name): dict(cfg or {}) for name, cfg in _section(raw, "mcp_servers").items()
    }
    skill_dirs = _string_list(_section(raw, "skills").get("dirs"), "skills.dirs")

    return TetherConfig(
        engine=engine,
        backends=backends,
        models=models,
        defaults=defaults,
        permissions=permissions,
        agents=agents,
        mcp_servers=mcp_servers,
        skill_dirs=skill_dirs,
    )


def load_yaml_config(path: str | Path, *, base: EngineConfig | None = None) -> TetherConfig:
    """Load and parse a YAML config file.

    Relative ``skills.dirs`` and ``defaults.cwd`` resolve against the
    file's directory.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML parse error in {path}: {exc}") from exc

    config = parse_config(raw, base=base)
    config.source = path
    root = path.parent
    if path.parent.name == ".tether":
        root = path.parent.parent
    config.skill_dirs = [str((root / d).resolve()) for d in config.skill_dirs]
    if config.defaults.cwd:
        config.defaults.cwd = str((root / config.defaults.cwd).resolve())
    logger.info(
        "Parsed YAML config %s: backends=%d agents=%d mcp_servers=%d",
        path.name, len(config.backends), len(config.agents), len(config.mcp_servers),
    )
    return config
