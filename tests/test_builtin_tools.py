from __future__ import annotations

from pathlib import Path

import pytest

from tether.engine.builtin_tools import build_builtin_tools
from tether.engine.tools import run_tool


def _tools(cwd: Path) -> dict:
    return {t.name: t for t in build_builtin_tools(cwd, bash_timeout=5)}


def test_tool_flags() -> None:
    tools = _tools(Path("."))
    assert {n for n, t in tools.items() if t.read_only} == {"Read", "Glob", "Grep"}
    assert {n for n, t in tools.items() if t.edits_files} == {"Write", "Edit"}


@pytest.mark.asyncio
async def test_read_numbers_lines_and_windows(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("one\ntwo\nthree\n")
    read = _tools(tmp_path)["Read"]

    text, is_error = await run_tool(read, {"file_path": "a.txt", "offset": 2, "limit": 1})
    assert not is_error
    assert text == "     2\ttwo"

    text, is_error = await run_tool(read, {"file_path": "missing.txt"})
    assert is_error
    assert "File not found" in text


@pytest.mark.asyncio
async def test_write_then_edit(tmp_path: Path) -> None:
    tools = _tools(tmp_path)
    text, _ = await run_tool(tools["Write"], {"file_path": "pkg/mod.py", "content": "x = 1\nx = 1\n"})
    assert text.startswith("Created")

    text, is_error = await run_tool(
        tools["Edit"], {"file_path": "pkg/mod.py", "old_string": "x = 1", "new_string": "x = 2"},
    )
    assert is_error
    assert "occurs 2 times" in text

    text, is_error = await run_tool(
        tools["Edit"],
        {"file_path": "pkg/mod.py", "old_string": "x = 1", "new_string": "x = 2", "replace_all": True},
    )
    assert not is_error
    assert (tmp_path / "pkg" / "mod.py").read_text() == "x = 2\nx = 2\n"


@pytest.mark.asyncio
async def test_glob_and_grep_skip_vendor_dirs(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("# TODO: tidy\nprint('hi')\n")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "hook.py").write_text("# TODO: ignored\n")
    tools = _tools(tmp_path)

    text, _ = await run_tool(tools["Glob"], {"pattern": "*.py"})
    assert text.splitlines() == [str(tmp_path.resolve() / "src" / "app.py")]

    text, _ = await run_tool(tools["Grep"], {"pattern": "todo", "case_insensitive": True})
    assert text == f"{tmp_path.resolve() / 'src' / 'app.py'}:1:# TODO: tidy"

    text, is_error = await run_tool(tools["Grep"], {"pattern": "("})
    assert is_error
    assert "Invalid regex" in text


@pytest.mark.asyncio
async def test_bash_runs_in_cwd_and_reports_exit_code(tmp_path: Path) -> None:
    bash = _tools(tmp_path)["Bash"]
    text, is_error = await run_tool(bash, {"command": "pwd"})
    assert not is_error
    assert text.strip() == str(tmp_path.resolve())

    text, is_error = await run_tool(bash, {"command": "echo oops; exit 3"})
    assert is_error
    assert text.startswith("oops")
    assert text.endswith("[exit code 3]")


@pytest.mark.asyncio
async def test_bash_timeout(tmp_path: Path) -> None:
    bash = _tools(tmp_path)["Bash"]
    text, is_error = await run_tool(bash, {"command": "sleep 5", "timeout": 0.2})
    assert is_error
    assert "timed out" in text
