"""
OpenAI backend: direct access to OpenAI chat-completions models.

Also the base for any endpoint speaking the same wire format
(the OpenRouter aggregator subclasses it).
"""

from __future__ import annotations

import logging

from chatline.backends.base import BaseBackend, ProviderKind
from chatline.errors import ProviderError

logger = logging.getLogger(__name__)


class OpenAIBackend(BaseBackend):
    """Backend for the OpenAI chat-completions API."""

    kind = ProviderKind.OPENAI
    endpoint = "/chat/completions"

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(self, turns: list[dict], model: str, system: str | None, stream: bool) -> dict:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": t["role"], "content": t["content"]} for t in turns)
        return {"model": model, "messages": messages, "stream": stream}

    def _extract_text(self, data: dict) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    def _extract_delta(self, payload: dict) -> str:
        if "error" in payload:
            err = payload["error"]
            message = err.get("message", "") if isinstance(err, dict) else str(err)
            raise ProviderError(f"{self.name}: {message or 'stream error'}")

        choices = payload.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""
