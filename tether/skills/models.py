"""Skill and lint diagnostic data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

SKILL_FILENAME = "SKILL.md"
REQUIRED_KEYS = ("name", "description")


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Skill:
    """A loaded skill document.

    ``body`` is the markdown after the frontmatter; ``body_line`` is the
    1-based line in SKILL.md where it starts.
    """
    name: str
    description: str
    path: Path
    body: str = ""
    triggers: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    body_line: int = 1

    @property
    def directory(self) -> Path:
        return self.path.parent

    def matches_prompt(self, prompt: str) -> bool:
        lowered = prompt.lower()
        return any(t.lower() in lowered for t in self.triggers if t.strip())

    def render(self) -> str:
        return f"[Skill: {self.name}]\nBase directory: {self.directory}\n\n{self.body}"


@dataclass
class Diagnostic:
    """One lint finding."""
    path: Path
    line: int
    code: str
    message: str
    severity: Severity = Severity.ERROR

    def format(self) -> str:
        return f"{self.path}:{self.line}: {self.severity.value} [{self.code}] {self.message}"
