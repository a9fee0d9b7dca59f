from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from tether.engine.backends.scripted import ScriptedBackend, text_turn
from tether.engine.config import EngineConfig, SessionOptions
from tether.engine.errors import SessionNotFoundError
from tether.engine.events import SessionResult, SessionStarted
from tether.engine.models import ConversationMessage, SessionRecord, TextBlock
from tether.engine.query import query
from tether.engine.session_store import SessionStore


def _record(session_id: str, text: str = "hello") -> SessionRecord:
    return SessionRecord(
        session_id=session_id,
        model="claude-sonnet-4-5",
        messages=[ConversationMessage(role="user", content=[TextBlock(text=text)])],
        title=text,
    )


def test_save_and_load_by_prefix(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(_record("abcdef12-0000"))
    store.save(_record("abcdef99-0000"))
    store.save(_record("12345678-0000"))

    assert store.load("1234").session_id == "12345678-0000"
    with pytest.raises(SessionNotFoundError):
        store.load("abcdef")  # ambiguous
    with pytest.raises(SessionNotFoundError):
        store.load("nope")


def test_path_traversal_is_rejected(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions")
    with pytest.raises(SessionNotFoundError):
        store.load("../secrets")
    assert not store.exists(".hidden")


def test_list_latest_and_delete(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    assert store.latest() is None
    store.save(_record("older"))
    time.sleep(0.01)
    store.save(_record("newer"))
    (tmp_path / "junk.json").write_text("{broken")

    assert [r.session_id for r in store.list_sessions()] == ["newer", "older"]
    assert store.latest().session_id == "newer"
    assert store.delete("newer")
    assert not store.delete("newer")
    assert store.latest().session_id == "older"


def test_fork_copies_transcript_under_new_id(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(_record("source-id", "original"))

    forked = store.fork("source-id")

    assert forked.session_id != "source-id"
    assert forked.parent_session_id == "source-id"
    assert forked.messages[0].text == "original"
    assert store.exists(forked.session_id)
    assert store.load("source-id").parent_session_id is None


def test_saved_file_is_plain_json(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.save(_record("json-check"))
    data = json.loads(path.read_text())
    assert data["session_id"] == "json-check"
    assert data["messages"][0]["content"] == [{"type": "text", "text": "hello"}]
    assert list(tmp_path.glob(".*.tmp")) == []


def _config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(session_dir=str(tmp_path / "sessions"))


def _options(tmp_path: Path, **kwargs) -> SessionOptions:
    return SessionOptions(cwd=str(tmp_path), include_builtin_tools=False, skills=[], **kwargs)


async def _events(prompt: str, options: SessionOptions, backend, config: EngineConfig) -> list:
    return [e async for e in query(prompt, options, backend=backend, config=config)]


@pytest.mark.asyncio
async def test_resume_continues_transcript(tmp_path: Path) -> None:
    config = _config(tmp_path)
    first = await _events("remember 7", _options(tmp_path), ScriptedBackend([text_turn("ok")]), config)
    session_id = first[-1].session_id

    backend = ScriptedBackend([text_turn("it was 7")])
    second = await _events("what number?", _options(tmp_path, resume=session_id), backend, config)

    started = second[0]
    assert isinstance(started, SessionStarted)
    assert started.resumed_from == session_id
    assert second[-1].session_id == session_id
    assert [m.text for m in backend.requests[0].messages] == ["remember 7", "ok", "what number?"]
    assert len(SessionStore(config.session_dir).load(session_id).messages) == 4


@pytest.mark.asyncio
async def test_fork_leaves_original_untouched(tmp_path: Path) -> None:
    config = _config(tmp_path)
    first = await _events("base", _options(tmp_path), ScriptedBackend([text_turn("ok")]), config)
    original_id = first[-1].session_id

    forked = await _events(
        "branch",
        _options(tmp_path, resume=original_id, fork_session=True),
        ScriptedBackend([text_turn("forked")]),
        config,
    )
    fork_id = forked[-1].session_id
    assert fork_id != original_id
    assert forked[0].resumed_from == original_id

    store = SessionStore(config.session_dir)
    assert len(store.load(original_id).messages) == 2
    assert len(store.load(fork_id).messages) == 4
    assert store.load(fork_id).parent_session_id == original_id


@pytest.mark.asyncio
async def test_continue_picks_latest_session(tmp_path: Path) -> None:
    config = _config(tmp_path)
    first = await _events("one", _options(tmp_path), ScriptedBackend([text_turn("ok")]), config)

    backend = ScriptedBackend([text_turn("continued")])
    await _events("two", _options(tmp_path, continue_conversation=True), backend, config)
    assert backend.requests[0].messages[0].text == "one"
    assert len(SessionStore(config.session_dir).list_sessions()) == 1
    assert isinstance(first[-1], SessionResult)


@pytest.mark.asyncio
async def test_resume_unknown_id_raises(tmp_path: Path) -> None:
    with pytest.raises(SessionNotFoundError):
        await _events(
            "x", _options(tmp_path, resume="does-not-exist"),
            ScriptedBackend([]), _config(tmp_path),
        )


@pytest.mark.asyncio
async def test_no_persist_writes_nothing(tmp_path: Path) -> None:
    config = _config(tmp_path)
    await _events(
        "x", _options(tmp_path, persist_session=False),
        ScriptedBackend([text_turn("ok")]), config,
    )
    assert not (tmp_path / "sessions").exists()
