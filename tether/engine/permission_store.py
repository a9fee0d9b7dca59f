"""Remembered "always allow" answers from the permission prompt.

Two files, one per RememberScope:

    global   ~/.tether/allowed_tools.json
    project  <cwd>/.tether/allowed_tools.json

Each holds ``{"tools": [...]}``. An entry is a tool name or a prefix
pattern ending in ``*`` (``mcp__github__*``) and matches the way
``allowed_tools`` does. Bash approvals never land here: the gateway
turns them into command whitelist patterns instead.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .durable import write_json_atomic
from .models import RememberScope

logger = logging.getLogger(__name__)

FILENAME = "allowed_tools.json"


def _read_entries(path: Path) -> list[str]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable approvals file %s: %s", path, exc)
        return []
    tools = data.get("tools") if isinstance(data, dict) else None
    if not isinstance(tools, list):
        logger.warning("Ignoring approvals file %s: expected {\"tools\": [...]}", path)
        return []
    return [t.strip() for t in tools if isinstance(t, str) and t.strip()]


class PermissionStore:
    """Tool approvals persisted per scope."""

    def __init__(
        self,
        project_dir: Path | None = None,
        global_dir: Path | None = None,
    ) -> None:
        self._paths: dict[RememberScope, Path] = {
            RememberScope.GLOBAL: (global_dir or Path.home() / ".tether") / FILENAME,
        }
        if project_dir is not None:
            self._paths[RememberScope.PROJECT] = project_dir / FILENAME

    @classmethod
    def for_project(cls, cwd: str | Path, *, global_dir: Path | None = None) -> PermissionStore:
        return cls(project_dir=Path(cwd) / ".tether", global_dir=global_dir)

    def path(self, scope: RememberScope) -> Path:
        """File for *scope*; project approvals fall back to global without a project."""
        return self._paths.get(scope) or self._paths[RememberScope.GLOBAL]

    def load(self) -> set[str]:
        """Entries from every scope."""
        entries: set[str] = set()
        for path in self._paths.values():
            entries.update(_read_entries(path))
        return entries

    def remember(self, tool_name: str, scope: RememberScope = RememberScope.PROJECT) -> Path:
        path = self.path(scope)
        entries = _read_entries(path)
        if tool_name not in entries:
            entries.append(tool_name)
            try:
                write_json_atomic(path, {"tools": sorted(entries)})
            except OSError as exc:
                logger.warning("Could not save approval for %s to %s: %s", tool_name, path, exc)
                return path
        logger.info("Remembered approval tool=%s scope=%s path=%s", tool_name, scope.value, path)
        return path
