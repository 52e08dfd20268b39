"""
Anthropic backend: direct access to Claude models via the Messages API.

The Messages API takes the system prompt as a top-level field and only
accepts user/assistant turns, so any system-role turns are folded into it.
Streaming arrives as typed events; text comes from content_block_delta.
"""

from __future__ import annotations

import logging

from chatline.backends.base import BaseBackend, ProviderKind
from chatline.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "2023-06-01"


class AnthropicBackend(BaseBackend):
    """Backend for the Anthropic Messages API."""

    kind = ProviderKind.ANTHROPIC
    endpoint = "/v1/messages"

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        timeout: float = 60,
        max_tokens: int = 4096,
        version: str = DEFAULT_VERSION,
        transport=None,
    ):
        super().__init__(name=name, url=url, api_key=api_key, timeout=timeout, transport=transport)
        self.max_tokens = max_tokens
        self.version = version

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.version,
        }

    def _build_body(self, turns: list[dict], model: str, system: str | None, stream: bool) -> dict:
        system_parts = [system] if system else []
        messages = []
        for t in turns:
            if t["role"] == "system":
                system_parts.append(t["content"])
            else:
                messages.append({"role": t["role"], "content": t["content"]})

        body = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": messages,
            "stream": stream,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        return body

    def _extract_text(self, data: dict) -> str:
        return "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )

    def _extract_delta(self, payload: dict) -> str:
        event_type = payload.get("type")
        if event_type == "error":
            err = payload.get("error") or {}
            raise ProviderError(f"{self.name}: {err.get('message', 'stream error')}")
        if event_type != "content_block_delta":
            return ""
        delta = payload.get("delta") or {}
        if delta.get("type") != "text_delta":
            return ""
        return delta.get("text") or ""
