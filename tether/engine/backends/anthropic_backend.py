"""Anthropic Messages API backend.

Talks to ``POST /v1/messages`` directly over aiohttp with native
tool use. Authenticated by API key read from an environment
variable (ANTHROPIC_API_KEY by default).
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import aiohttp

from ..errors import AuthenticationError, BackendConnectionError, BackendError
from ..models import ConversationMessage, TextBlock, Usage, block_from_dict
from .base import ModelBackend, ModelRequest, ModelTurn

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_RETRIABLE_STATUS = {429, 500, 502, 503, 504, 529}


def _wire_messages(messages: list[ConversationMessage]) -> list[dict[str, Any]]:
    """Transcript to API messages, dropping empty text blocks the API rejects."""
    wire: list[dict[str, Any]] = []
    for message in messages:
        blocks = [
            b.to_dict() for b in message.content
            if not (isinstance(b, TextBlock) and not b.text)
        ]
        if not blocks:
            continue
        wire.append({"role": message.role, "content": blocks})
    return wire


class AnthropicBackend(ModelBackend):
    """Backend calling the Messages API with an API key."""

    def __init__(
        self,
        *,
        api_key_env: str = "ANTHROPIC_API_KEY",
        api_key: str | None = None,
        base_url: str = "https://api.anthropic.com",
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
        request_timeout_seconds: float = 600.0,
    ) -> None:
        self._api_key_env = api_key_env
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def api_key(self) -> str | None:
        return self._api_key or os.getenv(self._api_key_env) or None

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _build_payload(self, request: ModelRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": _wire_messages(request.messages),
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = request.tools
        return payload

    @staticmethod
    def _parse_turn(data: dict[str, Any]) -> ModelTurn:
        content = []
        for raw in data.get("content") or []:
            if raw.get("type") in ("text", "tool_use"):
                content.append(block_from_dict(raw))
        usage = data.get("usage") or {}
        return ModelTurn(
            content=content,
            stop_reason=data.get("stop_reason") or "end_turn",
            usage=Usage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            ),
            model=data.get("model", ""),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def complete(self, request: ModelRequest) -> ModelTurn:
        api_key = self.api_key
        if not api_key:
            raise AuthenticationError(
                self.name, f"no API key: set {self._api_key_env}",
            )
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = self._build_payload(request)
        url = f"{self._base_url}/v1/messages"
        session = await self._get_session()

        attempt = 0
        while True:
            attempt += 1
            try:
                async with session.post(url, json=payload, headers=headers) as resp:
                    if resp.status in (401, 403):
                        body = await resp.text()
                        raise AuthenticationError(
                            self.name, f"HTTP {resp.status}: {body[:200]}",
                        )
                    if resp.status in _RETRIABLE_STATUS and attempt <= self._max_retries:
                        logger.warning(
                            "Anthropic HTTP %d (attempt %d/%d), retrying",
                            resp.status, attempt, self._max_retries + 1,
                        )
                        await asyncio.sleep(self._retry_delay * attempt)
                        continue
                    if resp.status >= 400:
                        body = await resp.text()
                        raise BackendConnectionError(
                            self.name, f"HTTP {resp.status}: {body[:200]}",
                        )
                    data = await resp.json()
            except BackendError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt <= self._max_retries:
                    logger.warning(
                        "Anthropic transport error (attempt %d/%d): %s",
                        attempt, self._max_retries + 1, exc,
                    )
                    await asyncio.sleep(self._retry_delay * attempt)
                    continue
                raise BackendConnectionError(self.name, f"connection failure: {exc}") from exc

            turn = self._parse_turn(data)
            logger.debug(
                "Anthropic turn model=%s stop=%s in=%d out=%d",
                turn.model, turn.stop_reason,
                turn.usage.input_tokens, turn.usage.output_tokens,
            )
            return turn

    async def shutdown(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
