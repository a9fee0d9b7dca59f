"""Deterministic backend replaying canned turns.

Used by the test suite and for offline dry runs of hook and
permission setups. Each script entry is either a ModelTurn or a
callable receiving the ModelRequest and returning one.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..errors import BackendError
from ..models import TextBlock, ToolUseBlock, Usage
from .base import ModelBackend, ModelRequest, ModelTurn

logger = logging.getLogger(__name__)

ScriptEntry = ModelTurn | Callable[[ModelRequest], ModelTurn]


def text_turn(text: str, **usage: int) -> ModelTurn:
    return ModelTurn(
        content=[TextBlock(text=text)],
        stop_reason="end_turn",
        usage=Usage(**usage),
    )


def tool_turn(name: str, tool_input: dict[str, Any], *, text: str = "", tool_use_id: str | None = None) -> ModelTurn:
    block = ToolUseBlock(name=name, input=tool_input)
    if tool_use_id:
        block.id = tool_use_id
    content: list = [TextBlock(text=text)] if text else []
    content.append(block)
    return ModelTurn(content=content, stop_reason="tool_use")


class ScriptedBackend(ModelBackend):
    """Returns script entries in order; records every request it saw."""

    def __init__(
        self,
        script: list[ScriptEntry] | None = None,
        *,
        repeat_last: bool = False,
    ) -> None:
        self._script = list(script or [])
        self._repeat_last = repeat_last
        self.requests: list[ModelRequest] = []

    @property
    def name(self) -> str:
        return "scripted"

    def extend(self, entries: list[ScriptEntry]) -> None:
        self._script.extend(entries)

    async def complete(self, request: ModelRequest) -> ModelTurn:
        self.requests.append(request)
        if not self._script:
            raise BackendError(self.name, "script exhausted")
        if self._repeat_last and len(self._script) == 1:
            entry = self._script[0]
        else:
            entry = self._script.pop(0)
        turn = entry(request) if callable(entry) else entry
        if not turn.model:
            turn.model = request.model
        logger.debug(
            "Scripted turn model=%s stop=%s tools=%d",
            request.model, turn.stop_reason, len(turn.tool_uses),
        )
        return turn

    def is_available(self) -> bool:
        return True
