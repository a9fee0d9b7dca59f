"""Claude CLI backend via claude_agent_sdk.

Uses the locally installed ``claude`` CLI (and its OAuth login) for a
single text-only completion per turn. The CLI's own tools are
disabled; tether's tools are described in the system prompt and the
model answers with tagged tool calls::

    <tool_use name="Read">{"file_path": "README.md"}</tool_use>

which are parsed back into ToolUseBlocks.
"""
from __future__ import annotations

import json
import logging
import re
import shutil

from ..errors import BackendConnectionError, BackendNotFoundError
from ..models import (
    ConversationMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from .base import ModelBackend, ModelRequest, ModelTurn

logger = logging.getLogger(__name__)

_TOOL_USE_PATTERN = re.compile(
    r'<tool_use\s+name="(?P<name>[^"]+)"(?:\s+id="(?P<id>[^"]+)")?\s*>(?P<body>.*?)</tool_use>',
    re.DOTALL,
)

TOOL_PROTOCOL_INSTRUCTIONS = """\
You can call tools. To call one, write exactly:
<tool_use name="TOOL_NAME">{"param": "value"}</tool_use>
The body must be a single JSON object matching the tool's input schema.
You may call several tools in one reply. After calling tools, stop and
wait: results arrive in the next message as [tool_result] sections.
Reply without any <tool_use> tag when the task is finished.

Available tools:
"""


def render_tool_catalog(tools: list[dict]) -> str:
    lines = []
    for spec in tools:
        schema = json.dumps(spec.get("input_schema", {}), separators=(",", ":"))
        lines.append(f"- {spec['name']}: {spec.get('description', '')}\n  input_schema: {schema}")
    return "\n".join(lines)


def render_transcript(messages: list[ConversationMessage]) -> str:
    """Flatten a transcript to tagged plain text for a text-only model."""
    sections: list[str] = []
    for message in messages:
        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    sections.append(f"[{message.role}]\n{block.text}")
            elif isinstance(block, ToolUseBlock):
                sections.append(
                    f'[{message.role}]\n<tool_use name="{block.name}" id="{block.id}">'
                    f"{json.dumps(block.input)}</tool_use>"
                )
            elif isinstance(block, ToolResultBlock):
                status = " error" if block.is_error else ""
                sections.append(
                    f"[tool_result id={block.tool_use_id}{status}]\n{block.content}"
                )
    return "\n\n".join(sections)


def parse_tool_calls(text: str) -> ModelTurn:
    """Split model text into prose and ToolUseBlocks.

    Malformed JSON bodies are kept as prose so the model sees its own
    mistake in the transcript.
    """
    content: list = []
    tool_uses: list[ToolUseBlock] = []
    cursor = 0
    prose_parts: list[str] = []
    for match in _TOOL_USE_PATTERN.finditer(text):
        prose_parts.append(text[cursor:match.start()])
        cursor = match.end()
        body = match.group("body").strip()
        try:
            tool_input = json.loads(body) if body else {}
        except json.JSONDecodeError:
            prose_parts.append(match.group(0))
            continue
        if not isinstance(tool_input, dict):
            prose_parts.append(match.group(0))
            continue
        block = ToolUseBlock(name=match.group("name"), input=tool_input)
        if match.group("id"):
            block.id = match.group("id")
        tool_uses.append(block)
    prose_parts.append(text[cursor:])
    prose = "".join(prose_parts).strip()
    if prose:
        content.append(TextBlock(text=prose))
    content.extend(tool_uses)
    return ModelTurn(
        content=content,
        stop_reason="tool_use" if tool_uses else "end_turn",
    )


class ClaudeCliBackend(ModelBackend):
    """Backend backed by the Claude CLI through claude_agent_sdk.

    Auth: relies on the CLI's own login (OAuth). No API key needed.
    """

    def __init__(self, command: str = "claude") -> None:
        self._command = self.resolve_command(command, "claude")

    @property
    def name(self) -> str:
        return "claude-cli"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    async def complete(self, request: ModelRequest) -> ModelTurn:
        try:
            from claude_agent_sdk import ClaudeAgentOptions, query
            from claude_agent_sdk import CLINotFoundError, ClaudeSDKError
        except ImportError as exc:
            raise BackendNotFoundError(self.name, "claude_agent_sdk") from exc

        system = request.system
        if request.tools:
            system = (
                f"{system}\n\n{TOOL_PROTOCOL_INSTRUCTIONS}"
                f"{render_tool_catalog(request.tools)}"
            ).strip()

        options = ClaudeAgentOptions(
            system_prompt=system,
            allowed_tools=[],
            permission_mode="plan",
            model=request.model,
            max_turns=1,
        )
        prompt = render_transcript(request.messages)

        result_text = ""
        usage = Usage()
        try:
            async for message in query(prompt=prompt, options=options):
                if hasattr(message, "result"):
                    result_text = message.result or ""
                    raw_usage = getattr(message, "usage", None) or {}
                    if isinstance(raw_usage, dict):
                        usage = Usage(
                            input_tokens=int(raw_usage.get("input_tokens", 0) or 0),
                            output_tokens=int(raw_usage.get("output_tokens", 0) or 0),
                        )
        except CLINotFoundError as exc:
            raise BackendNotFoundError(self.name, self._command) from exc
        except ClaudeSDKError as exc:
            raise BackendConnectionError(self.name, f"connection failure: {exc}") from exc

        turn = parse_tool_calls(result_text)
        turn.usage = usage
        turn.model = request.model
        logger.debug(
            "Claude CLI turn model=%s tools=%d chars=%d",
            request.model, len(turn.tool_uses), len(result_text),
        )
        return turn
