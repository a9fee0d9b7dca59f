from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp import test_utils

from tether.engine.backends.anthropic_backend import AnthropicBackend
from tether.engine.backends.base import ModelRequest
from tether.engine.errors import AuthenticationError, BackendConnectionError
from tether.engine.models import ConversationMessage, TextBlock, ToolUseBlock

REPLY = {
    "id": "msg_1",
    "model": "claude-sonnet-4-5",
    "stop_reason": "tool_use",
    "usage": {"input_tokens": 12, "output_tokens": 8},
    "content": [
        {"type": "text", "text": "Reading the file."},
        {"type": "tool_use", "id": "toolu_x", "name": "Read", "input": {"file_path": "a.py"}},
        {"type": "thinking", "thinking": "ignored"},
    ],
}


def _request() -> ModelRequest:
    return ModelRequest(
        model="claude-sonnet-4-5",
        messages=[
            ConversationMessage(role="user", content=[TextBlock(text="open a.py")]),
            ConversationMessage(role="assistant", content=[TextBlock(text="")]),
        ],
        system="Be brief.",
        tools=[{"name": "Read", "description": "read", "input_schema": {"type": "object"}}],
        max_tokens=256,
    )


def _app(responses: list, seen: list) -> web.Application:
    async def messages(request: web.Request) -> web.Response:
        seen.append((dict(request.headers), await request.json()))
        status, body = responses.pop(0)
        return web.json_response(body, status=status)

    app = web.Application()
    app.router.add_post("/v1/messages", messages)
    return app


def _backend(server: test_utils.TestServer, **kwargs) -> AnthropicBackend:
    kwargs.setdefault("api_key", "test-key")
    return AnthropicBackend(base_url=str(server.make_url("/")), retry_delay_seconds=0, **kwargs)


@pytest.mark.asyncio
async def test_complete_sends_payload_and_parses_turn() -> None:
    seen: list = []
    async with test_utils.TestServer(_app([(200, REPLY)], seen)) as server:
        backend = _backend(server)
        turn = await backend.complete(_request())
        await backend.shutdown()

    headers, payload = seen[0]
    assert headers["x-api-key"] == "test-key"
    assert headers["anthropic-version"] == "2023-06-01"
    assert payload["system"] == "Be brief."
    assert payload["max_tokens"] == 256
    assert payload["tools"][0]["name"] == "Read"
    # empty assistant text is dropped
    assert [m["role"] for m in payload["messages"]] == ["user"]

    assert turn.text == "Reading the file."
    assert turn.tool_uses == [ToolUseBlock(id="toolu_x", name="Read", input={"file_path": "a.py"})]
    assert turn.stop_reason == "tool_use"
    assert turn.usage.input_tokens == 12


@pytest.mark.asyncio
async def test_overloaded_response_is_retried() -> None:
    seen: list = []
    responses = [(503, {"error": "overloaded"}), (200, REPLY)]
    async with test_utils.TestServer(_app(responses, seen)) as server:
        backend = _backend(server, max_retries=2)
        turn = await backend.complete(_request())
        await backend.shutdown()
    assert len(seen) == 2
    assert turn.model == "claude-sonnet-4-5"


@pytest.mark.asyncio
async def test_retries_exhausted_raise_connection_error() -> None:
    seen: list = []
    responses = [(503, {"error": "down"}), (503, {"error": "down"})]
    async with test_utils.TestServer(_app(responses, seen)) as server:
        backend = _backend(server, max_retries=1)
        with pytest.raises(BackendConnectionError, match="HTTP 503"):
            await backend.complete(_request())
        await backend.shutdown()
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_rejected_key_is_authentication_error() -> None:
    async with test_utils.TestServer(_app([(401, {"error": "invalid x-api-key"})], [])) as server:
        backend = _backend(server)
        with pytest.raises(AuthenticationError, match="HTTP 401"):
            await backend.complete(_request())
        await backend.shutdown()


@pytest.mark.asyncio
async def test_missing_key_fails_before_request(monkeypatch) -> None:
    monkeypatch.delenv("TETHER_TEST_MISSING_KEY", raising=False)
    backend = AnthropicBackend(api_key_env="TETHER_TEST_MISSING_KEY")
    assert not backend.is_available()
    with pytest.raises(AuthenticationError, match="TETHER_TEST_MISSING_KEY"):
        await backend.complete(_request())


def test_key_is_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("TETHER_TEST_KEY", "from-env")
    backend = AnthropicBackend(api_key_env="TETHER_TEST_KEY")
    assert backend.is_available()
    assert backend.api_key == "from-env"
