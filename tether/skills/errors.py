"""Skill loading errors."""
from __future__ import annotations


class SkillError(Exception):
    """Base exception for skill discovery and loading."""


class FrontmatterError(SkillError):
    """SKILL.md has no, or an unparseable, frontmatter block."""
    def __init__(self, path: str, reason: str, line: int = 1):
        self.path = path
        self.reason = reason
        self.line = line
        super().__init__(f"{path}:{line}: {reason}")


class SkillNotFoundError(SkillError):
    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        listing = ", ".join(available) or "none"
        super().__init__(f"Skill not found: {name}. Available: {listing}")
