from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from tether.engine.tools import run_tool
from tether.skills import (
    FrontmatterError,
    SkillError,
    SkillNotFoundError,
    SkillSet,
    default_skill_dirs,
    discover_skills,
    load_skill,
)
from tether.skills.frontmatter import split_frontmatter


def _skill(root: Path, dirname: str, frontmatter: str, body: str = "Do the thing.") -> Path:
    skill_dir = root / dirname
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text(f"---\n{textwrap.dedent(frontmatter)}---\n{body}\n")
    return skill_dir


def test_split_frontmatter_returns_body_line() -> None:
    meta, body, body_line = split_frontmatter("---\nname: x\ndescription: y\n---\n# Title\n")
    assert meta == {"name": "x", "description": "y"}
    assert body == "# Title"
    assert body_line == 5


@pytest.mark.parametrize("text, reason", [
    ("# no frontmatter\n", "missing frontmatter"),
    ("---\nname: x\n", "unterminated frontmatter"),
    ("---\n- a\n- b\n---\n", "must be a YAML mapping"),
    ("---\nname: [x\n---\n", "invalid YAML"),
])
def test_split_frontmatter_errors(text: str, reason: str) -> None:
    with pytest.raises(FrontmatterError, match=reason):
        split_frontmatter(text, "SKILL.md")


def test_invalid_yaml_reports_line() -> None:
    with pytest.raises(FrontmatterError) as excinfo:
        split_frontmatter("---\nname: ok\ndescription: [broken\n---\n", "SKILL.md")
    assert excinfo.value.line >= 3
    assert str(excinfo.value).startswith(f"SKILL.md:{excinfo.value.line}:")


def test_load_skill_reads_triggers(tmp_path: Path) -> None:
    skill_dir = _skill(tmp_path, "pdf", """\
        name: pdf-forms
        description: Fill PDF forms
        triggers: [pdf, acroform]
    """)
    skill = load_skill(skill_dir)
    assert skill.name == "pdf-forms"
    assert skill.triggers == ["pdf", "acroform"]
    assert skill.body == "Do the thing."
    assert skill.directory == skill_dir
    assert skill.matches_prompt("Fill this AcroForm")
    assert not skill.matches_prompt("write a poem")


def test_load_skill_requires_name_and_description(tmp_path: Path) -> None:
    skill_dir = _skill(tmp_path, "nameless", "description: No name here\n")
    with pytest.raises(FrontmatterError, match="missing required key"):
        load_skill(skill_dir)


def test_discovery_order_and_invalid_skills(tmp_path: Path) -> None:
    project = tmp_path / "project"
    home = tmp_path / "home"
    _skill(project / ".tether" / "skills", "deploy", "name: deploy\ndescription: project copy\n")
    _skill(home / ".tether" / "skills", "deploy", "name: deploy\ndescription: home copy\n")
    _skill(home / ".tether" / "skills", "broken", "name: [oops\n")
    _skill(home / ".tether" / "skills", ".hidden", "name: hidden\ndescription: x\n")

    roots = default_skill_dirs(project, home=home)
    skills = discover_skills(roots)
    assert [s.name for s in skills] == ["deploy"]
    assert skills[0].description == "project copy"


def test_undecodable_skill_is_skipped(tmp_path: Path) -> None:
    root = tmp_path / "skills"
    _skill(root, "deploy", "name: deploy\ndescription: Ship it\n")
    broken = root / "broken"
    broken.mkdir()
    (broken / "SKILL.md").write_bytes(b"---\nname: x\ndescription: \xff\xfe\n---\n")

    with pytest.raises(SkillError, match="cannot read"):
        load_skill(broken)
    assert [s.name for s in discover_skills([root])] == ["deploy"]


def test_byte_order_mark_before_frontmatter(tmp_path: Path) -> None:
    skill_dir = tmp_path / "bom"
    skill_dir.mkdir()
    (skill_dir / "SKILL.md").write_text(
        "\ufeff---\nname: bom\ndescription: Saved by Notepad\n---\nBody.\n", encoding="utf-8",
    )
    skill = load_skill(skill_dir)
    assert skill.name == "bom"
    assert skill.body == "Body."


def test_extra_dirs_come_last(tmp_path: Path) -> None:
    roots = default_skill_dirs(tmp_path / "p", ["~/extra"], home=tmp_path / "h")
    assert roots[0] == tmp_path / "p" / ".tether" / "skills"
    assert roots[1] == tmp_path / "h" / ".tether" / "skills"
    assert roots[2] == Path("~/extra").expanduser()


@pytest.mark.asyncio
async def test_skill_tool_loads_body(tmp_path: Path) -> None:
    skill_dir = _skill(tmp_path, "notes", "name: release-notes\ndescription: Write release notes\n",
                       body="Group changes by type.")
    skills = SkillSet([load_skill(skill_dir)])
    skill_tool = skills.build_tool()
    assert skill_tool.read_only

    text, is_error = await run_tool(skill_tool, {"skill": "release-notes"})
    assert not is_error
    assert text.startswith("[Skill: release-notes]")
    assert f"Base directory: {skill_dir}" in text
    assert text.endswith("Group changes by type.")

    text, is_error = await run_tool(skill_tool, {"skill": "unknown"})
    assert is_error
    assert "Available: release-notes" in text


def test_skill_set_catalog_and_lookup(tmp_path: Path) -> None:
    skills = SkillSet([load_skill(_skill(tmp_path, "a", "name: alpha\ndescription: First\n"))])
    assert len(skills) == 1
    assert skills.catalog().splitlines()[0] == "# Skills"
    assert "- alpha: First" in skills.catalog()
    with pytest.raises(SkillNotFoundError):
        skills.get("beta")
    assert SkillSet().catalog() == ""
    assert not SkillSet()
