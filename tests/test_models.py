from __future__ import annotations

import pytest

from tether.engine.models import (
    ConversationMessage,
    PermissionMode,
    SessionRecord,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    block_from_dict,
    parse_permission_mode,
)


def test_parse_permission_mode_accepts_aliases() -> None:
    assert parse_permission_mode("acceptEdits") == PermissionMode.ACCEPT_EDITS
    assert parse_permission_mode("bypass") == PermissionMode.BYPASS
    assert parse_permission_mode("plan") == PermissionMode.PLAN
    assert parse_permission_mode(None) == PermissionMode.DEFAULT
    assert parse_permission_mode("nonsense") == PermissionMode.DEFAULT


def test_tool_result_list_content_is_flattened() -> None:
    block = block_from_dict({
        "type": "tool_result",
        "tool_use_id": "toolu_1",
        "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
        "is_error": True,
    })
    assert isinstance(block, ToolResultBlock)
    assert block.content == "a\nb"
    assert block.is_error


def test_unknown_block_type_raises() -> None:
    with pytest.raises(ValueError, match="image"):
        block_from_dict({"type": "image"})


def test_message_from_plain_string_content() -> None:
    message = ConversationMessage.from_dict({"role": "user", "content": "hello"})
    assert message.text == "hello"


def test_session_record_survives_json_dict() -> None:
    record = SessionRecord(
        session_id="s-1",
        model="claude-sonnet-4-5",
        messages=[
            ConversationMessage(role="user", content=[TextBlock(text="hi")]),
            ConversationMessage(role="assistant", content=[
                ToolUseBlock(id="toolu_1", name="Read", input={"file_path": "a"}),
            ]),
        ],
        usage=Usage(input_tokens=10, output_tokens=4),
        num_turns=1,
        title="hi",
    )
    restored = SessionRecord.from_dict(record.to_dict())
    assert restored.session_id == "s-1"
    assert restored.usage.total_tokens == 14
    assert restored.messages[1].tool_uses[0].input == {"file_path": "a"}
    assert restored.created_at == record.created_at
