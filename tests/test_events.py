from __future__ import annotations

from tether.engine.events import (
    SessionEvent,
    SessionResult,
    ToolResultReceived,
    dict_to_event,
    event_to_dict,
)


def test_event_to_dict_uses_event_key_and_drops_none() -> None:
    event = ToolResultReceived(
        session_id="abc", tool_use_id="toolu_1", tool_name="Read", content="ok",
    )
    data = event_to_dict(event)
    assert data["event"] == "tool_result"
    assert "event_type" not in data
    assert "parent_tool_use_id" not in data
    assert data["tool_name"] == "Read"


def test_dict_to_event_restores_type_and_ignores_unknown_keys() -> None:
    data = {
        "event": "result",
        "session_id": "abc",
        "subtype": "error_max_turns",
        "is_error": True,
        "num_turns": 3,
        "unexpected": "ignored",
    }
    event = dict_to_event(data)
    assert isinstance(event, SessionResult)
    assert event.subtype == "error_max_turns"
    assert event.num_turns == 3


def test_unknown_event_type_falls_back_to_base() -> None:
    event = dict_to_event({"event": "something_new", "session_id": "x"})
    assert type(event) is SessionEvent
    assert event.event_type == "something_new"
