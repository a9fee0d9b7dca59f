from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from rich.console import Console

from tether.engine.backends.registry import BackendRegistry
from tether.engine.backends.scripted import ScriptedBackend, text_turn, tool_turn
from tether.engine.cli import _resolve_prompt, build_parser, main
from tether.engine.models import SessionRecord, Usage
from tether.engine.session_store import SessionStore


@pytest.fixture(autouse=True)
def wide_console(monkeypatch) -> None:
    monkeypatch.setattr("tether.engine.cli.console", Console(width=240))


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("TETHER_SESSION_DIR", str(home / "sessions"))
    return home


def _registry_with(backend: ScriptedBackend) -> BackendRegistry:
    registry = BackendRegistry()
    registry.register("scripted", backend)
    return registry


def test_run_flags_parse() -> None:
    args = build_parser().parse_args([
        "--cwd", "/work", "run", "fix it",
        "--model", "opus", "--permission-mode", "plan",
        "--allowed-tools", "Read", "Grep", "-c", "-y", "--max-turns", "4",
    ])
    assert args.command == "run"
    assert args.cwd == "/work"
    assert args.prompt == "fix it"
    assert args.allowed_tools == ["Read", "Grep"]
    assert args.continue_conversation
    assert args.yes
    assert args.max_turns == 4


def test_invalid_permission_mode_is_rejected() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run", "x", "--permission-mode", "yolo"])


def test_resolve_prompt_sources(tmp_path: Path) -> None:
    prompt_file = tmp_path / "task.md"
    prompt_file.write_text("  Refactor the parser.\n")
    assert _resolve_prompt(None, str(prompt_file)) == "Refactor the parser."
    assert _resolve_prompt("inline", None) == "inline"
    with pytest.raises(SystemExit, match="not both"):
        _resolve_prompt("inline", str(prompt_file))
    with pytest.raises(SystemExit, match="not found"):
        _resolve_prompt(None, str(tmp_path / "missing.md"))


def test_run_prints_json_events(tmp_path: Path, isolated_home: Path, capsys) -> None:
    backend = ScriptedBackend([text_turn("All done.")])
    with patch("tether.engine.query.build_backend_registry", return_value=_registry_with(backend)):
        code = main(["--cwd", str(tmp_path), "run", "say done", "--json", "--no-persist"])

    assert code == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert lines[0]["event"] == "session_started"
    assert lines[-1]["event"] == "result"
    assert lines[-1]["result"] == "All done."


def test_run_uses_yaml_config(tmp_path: Path, isolated_home: Path, capsys) -> None:
    (tmp_path / "tether.yaml").write_text(
        "models:\n  fast: claude-haiku-4-5\n"
        "defaults:\n  model: fast\n  system_prompt: Be terse.\n"
        "permissions:\n  allowed_tools: [Read]\n"
    )
    backend = ScriptedBackend([text_turn("ok")])
    with patch("tether.engine.query.build_backend_registry", return_value=_registry_with(backend)):
        code = main(["--cwd", str(tmp_path), "run", "hi", "--no-persist"])

    assert code == 0
    request = backend.requests[0]
    assert request.model == "claude-haiku-4-5"
    assert request.system == "Be terse."
    assert [t["name"] for t in request.tools] == ["Read"]
    assert "success" in capsys.readouterr().out


def test_run_keeps_yaml_cwd_without_flag(tmp_path: Path, isolated_home: Path, monkeypatch) -> None:
    project = tmp_path / "proj"
    project.mkdir()
    (project / "marker.txt").write_text("inside proj\n")
    (tmp_path / "tether.yaml").write_text("defaults:\n  cwd: proj\n")
    monkeypatch.chdir(tmp_path)
    backend = ScriptedBackend([tool_turn("Read", {"file_path": "marker.txt"}), text_turn("ok")])
    with patch("tether.engine.query.build_backend_registry", return_value=_registry_with(backend)):
        code = main(["run", "read the marker", "--no-persist", "-y"])

    assert code == 0
    assert "inside proj" in backend.requests[1].messages[-1].content[0].content


def test_run_unknown_backend_reports_error(tmp_path: Path, isolated_home: Path, capsys) -> None:
    code = main(["--cwd", str(tmp_path), "run", "hi", "--backend", "nope", "--no-persist"])
    assert code == 1
    assert "Unknown backend 'nope'" in capsys.readouterr().err


def test_run_error_result_exits_nonzero(tmp_path: Path, isolated_home: Path) -> None:
    with patch("tether.engine.query.build_backend_registry",
               return_value=_registry_with(ScriptedBackend([]))):
        code = main(["--cwd", str(tmp_path), "run", "hi", "--no-persist", "--json"])
    assert code == 1


def test_run_resume_unknown_session_reports_error(tmp_path: Path, isolated_home: Path, capsys) -> None:
    with patch("tether.engine.query.build_backend_registry",
               return_value=_registry_with(ScriptedBackend([]))):
        code = main(["--cwd", str(tmp_path), "run", "hi", "--resume", "nope"])
    assert code == 1
    assert "Session not found: nope" in capsys.readouterr().err


def test_sessions_list_and_delete(isolated_home: Path, capsys) -> None:
    store = SessionStore(isolated_home / "sessions")
    store.save(SessionRecord(
        session_id="0123abcd-aaaa", model="claude-sonnet-4-5", title="First task",
        usage=Usage(10, 5), num_turns=2,
    ))

    assert main(["sessions"]) == 0
    out = capsys.readouterr().out
    assert "0123abcd" in out
    assert "First task" in out

    assert main(["sessions", "--delete", "0123"]) == 0
    assert not store.exists("0123abcd-aaaa")
    assert main(["sessions", "--delete", "0123"]) == 1


def test_skills_list(tmp_path: Path, isolated_home: Path, capsys) -> None:
    skill_dir = tmp_path / ".tether" / "skills" / "deploy"
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text("---\nname: deploy\ndescription: Ship it\n---\nSteps.\n")

    assert main(["--cwd", str(tmp_path), "skills", "list"]) == 0
    out = capsys.readouterr().out
    assert "deploy" in out
    assert "Ship it" in out


def test_skills_lint_exit_codes(tmp_path: Path, isolated_home: Path, capsys) -> None:
    clean = tmp_path / "clean"
    clean.mkdir()
    (clean / "SKILL.md").write_text("---\nname: clean\ndescription: Fine\n---\nAll good.\n")
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "SKILL.md").write_text("---\nname: broken\ndescription: Bad\n---\n```json\n{oops}\n```\n")

    assert main(["skills", "lint", str(clean)]) == 0
    assert "No problems found" in capsys.readouterr().out

    assert main(["skills", "lint", str(broken)]) == 1
    assert "code-syntax" in capsys.readouterr().out

    assert main(["skills", "lint", str(tmp_path / "missing")]) == 2
