from __future__ import annotations

import textwrap
from pathlib import Path

from tether.skills.lint import (
    extract_code_blocks,
    find_references,
    has_errors,
    lint_file,
    lint_path,
    lint_text,
)
from tether.skills.models import Severity

GOOD_SKILL = textwrap.dedent("""\
    ---
    name: api-client
    description: Call the internal API
    triggers: [api]
    ---
    # API client

    See [the reference](references/endpoints.md) for every route.

    ```python
    import json
    print(json.dumps({"ok": True}))
    ```

    ```json
    {"retries": 3}
    ```

    ```bash
    this is not checked (
    ```
""")


def _codes(diagnostics) -> list[str]:
    return [d.code for d in diagnostics]


def _skill_dir(tmp_path: Path, text: str) -> Path:
    skill_dir = tmp_path / "api-client"
    (skill_dir / "references").mkdir(parents=True)
    (skill_dir / "references" / "endpoints.md").write_text("# Endpoints\n")
    (skill_dir / "SKILL.md").write_text(text)
    return skill_dir


def test_clean_skill_has_no_diagnostics(tmp_path: Path) -> None:
    skill_dir = _skill_dir(tmp_path, GOOD_SKILL)
    assert lint_file(skill_dir / "SKILL.md") == []


def test_code_blocks_keep_language_and_line() -> None:
    blocks = extract_code_blocks("intro\n```py\nx = 1\n```\n~~~\nplain\n~~~\n", line_offset=10)
    assert [(b.language, b.code, b.line) for b in blocks] == [
        ("py", "x = 1", 12),
        ("", "plain", 15),
    ]


def test_syntax_errors_point_at_the_bad_line(tmp_path: Path) -> None:
    text = textwrap.dedent("""\
        ---
        name: broken
        description: Has bad code
        ---
        ```python
        def ok():
            return (
        ```

        ```yaml
        key: [unclosed
        ```

        ```toml
        name = 
        ```

        ```json
        {"a": 1,}
        ```
    """)
    diagnostics = lint_text(text, tmp_path / "SKILL.md")
    assert _codes(diagnostics) == ["code-syntax"] * 4
    messages = [d.message.split(":")[0] for d in diagnostics]
    assert messages == ["python", "yaml", "toml", "json"]
    assert diagnostics[0].line >= 6
    assert diagnostics[3].line == 19
    assert has_errors(diagnostics)


def test_broken_references_are_reported(tmp_path: Path) -> None:
    text = textwrap.dedent("""\
        ---
        name: refs
        description: References
        ---
        Read [setup](setup.md#install) and ![diagram](img/flow.png).
        Also consult references/missing.md before starting.
        External [docs](https://example.test/docs) and [anchor](#usage) are fine.

        ```
        references/inside-code.md is ignored
        ```
    """)
    (tmp_path / "setup.md").write_text("# Setup\n")
    diagnostics = lint_text(text, tmp_path / "SKILL.md")
    assert [(d.code, d.line) for d in diagnostics] == [
        ("broken-ref", 5),
        ("broken-ref", 6),
    ]
    assert "img/flow.png" in diagnostics[0].message
    assert "references/missing.md" in diagnostics[1].message


def test_find_references_deduplicates() -> None:
    refs = find_references("[a](x.md) [a](x.md) references/y.md")
    assert refs == [(1, "x.md"), (1, "references/y.md")]


def test_frontmatter_problems(tmp_path: Path) -> None:
    path = tmp_path / "SKILL.md"
    assert _codes(lint_text("# Title\n", path)) == ["frontmatter-missing"]
    assert _codes(lint_text("---\nname: x\n", path)) == ["frontmatter-invalid"]
    assert _codes(lint_text("---\nname: x\ndescription: ''\n---\n", path)) == [
        "frontmatter-missing-key",
    ]
    diagnostics = lint_text("---\nname: 3\ndescription: d\ntriggers: pdf\n---\n", path)
    assert _codes(diagnostics) == ["frontmatter-type", "frontmatter-type"]
    assert diagnostics[1].severity == Severity.WARNING
    assert not has_errors([diagnostics[1]])


def test_byte_order_mark_is_not_missing_frontmatter(tmp_path: Path) -> None:
    assert lint_text("\ufeff---\nname: x\ndescription: d\n---\nBody.\n", tmp_path / "SKILL.md") == []


def test_plain_markdown_needs_no_frontmatter(tmp_path: Path) -> None:
    note = tmp_path / "notes.md"
    note.write_text("# Notes\n\n```json\n{}\n```\n")
    assert lint_file(note) == []


def test_lint_path_walks_directory(tmp_path: Path) -> None:
    skill_dir = _skill_dir(tmp_path, GOOD_SKILL.replace("references/endpoints.md", "references/gone.md"))
    (tmp_path / ".cache").mkdir()
    (tmp_path / ".cache" / "SKILL.md").write_text("no frontmatter")

    diagnostics = lint_path(tmp_path)
    assert [(d.path, d.code) for d in diagnostics] == [(skill_dir / "SKILL.md", "broken-ref")]
    assert diagnostics[0].format().startswith(f"{skill_dir / 'SKILL.md'}:8: error [broken-ref]")
