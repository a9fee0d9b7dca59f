"""Skill discovery, the system-prompt catalog, and the ``Skill`` tool.

Layout on disk::

    <root>/
        pdf-forms/
            SKILL.md          frontmatter: name, description, triggers
            references/       optional, linked from the body
        release-notes/
            SKILL.md

Lookup roots, highest priority first:
    <cwd>/.tether/skills, ~/.tether/skills, then any extra dirs.
A skill name found in an earlier root hides later ones.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ..engine.tools import Tool, error_result, text_result, tool
from .errors import FrontmatterError, SkillError, SkillNotFoundError
from .frontmatter import split_frontmatter
from .models import REQUIRED_KEYS, SKILL_FILENAME, Skill

logger = logging.getLogger(__name__)

SKILL_TOOL_NAME = "Skill"


def default_skill_dirs(
    cwd: str | Path | None = None,
    extra_dirs: list[str] | None = None,
    *,
    home: Path | None = None,
) -> list[Path]:
    roots: list[Path] = []
    if cwd is not None:
        roots.append(Path(cwd) / ".tether" / "skills")
    roots.append((home or Path.home()) / ".tether" / "skills")
    for extra in extra_dirs or []:
        roots.append(Path(extra).expanduser())
    return roots


def _as_triggers(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return []


def load_skill(skill_dir: Path) -> Skill:
    """Load one skill directory. Raises SkillError if it is invalid."""
    path = skill_dir / SKILL_FILENAME
    if not path.is_file():
        raise SkillError(f"{skill_dir}: no {SKILL_FILENAME}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SkillError(f"{path}: cannot read: {exc}") from exc
    meta, body, body_line = split_frontmatter(text, str(path))
    missing = [k for k in REQUIRED_KEYS if not meta.get(k)]
    if missing:
        raise FrontmatterError(str(path), f"missing required key(s): {', '.join(missing)}")
    return Skill(
        name=str(meta["name"]),
        description=str(meta["description"]).strip(),
        path=path,
        body=body.strip(),
        triggers=_as_triggers(meta.get("triggers")),
        metadata=meta,
        body_line=body_line,
    )


def iter_skill_dirs(root: Path):
    if not root.is_dir():
        return
    for entry in sorted(root.iterdir()):
        if entry.is_dir() and not entry.name.startswith((".", "_")):
            if (entry / SKILL_FILENAME).is_file():
                yield entry


def discover_skills(roots: list[Path]) -> list[Skill]:
    """Load every valid skill under *roots*. Invalid ones are logged and skipped."""
    found: dict[str, Skill] = {}
    for root in roots:
        for skill_dir in iter_skill_dirs(root):
            try:
                skill = load_skill(skill_dir)
            except SkillError as exc:
                logger.warning("Skipping invalid skill %s: %s", skill_dir, exc)
                continue
            if skill.name in found:
                logger.debug(
                    "Skill %s at %s shadowed by %s",
                    skill.name, skill.path, found[skill.name].path,
                )
                continue
            found[skill.name] = skill
    logger.info("Discovered %d skill(s) in %d root(s)", len(found), len(roots))
    return list(found.values())


class SkillSet:
    """The skills offered to one session."""

    def __init__(self, skills: list[Skill] | None = None) -> None:
        self._skills: dict[str, Skill] = {}
        for skill in skills or []:
            self._skills.setdefault(skill.name, skill)

    @classmethod
    def discover(
        cls,
        cwd: str | Path | None = None,
        extra_dirs: list[str] | None = None,
    ) -> SkillSet:
        return cls(discover_skills(default_skill_dirs(cwd, extra_dirs)))

    def __len__(self) -> int:
        return len(self._skills)

    def __bool__(self) -> bool:
        return bool(self._skills)

    def names(self) -> list[str]:
        return list(self._skills)

    def skills(self) -> list[Skill]:
        return list(self._skills.values())

    def get(self, name: str) -> Skill:
        skill = self._skills.get(name)
        if skill is None:
            raise SkillNotFoundError(name, self.names())
        return skill

    def match_triggers(self, prompt: str) -> list[Skill]:
        return [s for s in self._skills.values() if s.matches_prompt(prompt)]

    def catalog(self) -> str:
        """System-prompt section listing every skill."""
        if not self._skills:
            return ""
        lines = [
            "# Skills",
            f"Use the {SKILL_TOOL_NAME} tool to load a skill's full instructions "
            "before working on a matching task.",
            "",
        ]
        for skill in self._skills.values():
            lines.append(f"- {skill.name}: {skill.description}")
        return "\n".join(lines)

    def build_tool(self) -> Tool:
        skills = self

        @tool(
            SKILL_TOOL_NAME,
            "Load the full instructions of a skill by name.",
            {
                "type": "object",
                "properties": {"skill": {"type": "string", "description": "Skill name"}},
                "required": ["skill"],
            },
            read_only=True,
        )
        async def load(args: dict[str, Any]) -> dict[str, Any]:
            try:
                skill = skills.get(args["skill"])
            except SkillNotFoundError as exc:
                return error_result(str(exc))
            logger.info("Skill loaded by model: %s", skill.name)
            return text_result(skill.render())

        return load
