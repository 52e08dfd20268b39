"""
OpenRouter backend: API access to hosted models from many vendors.
Model ids are passed through untouched (e.g. "anthropic/claude-3.5-sonnet"),
so new models only need a registry entry.
Extracts cost_usd from OpenRouter responses for logging.
"""

from __future__ import annotations

import logging

from chatline.backends.base import ProviderKind
from chatline.backends.openai import OpenAIBackend

logger = logging.getLogger(__name__)


class OpenRouterBackend(OpenAIBackend):
    """Backend for the OpenRouter API (OpenAI wire format)."""

    kind = ProviderKind.OPENROUTER

    def _headers(self) -> dict:
        """Build request headers with auth and app attribution."""
        headers = super()._headers()
        headers["HTTP-Referer"] = "https://github.com/chatline/chatline"
        headers["X-Title"] = "chatline"
        return headers

    def _extract_cost(self, data: dict) -> float | None:
        """
        Extract cost from OpenRouter response.
        Cost may be a top-level field or live under usage.
        """
        if "cost_usd" in data:
            try:
                return float(data["cost_usd"])
            except (ValueError, TypeError):
                pass

        usage = data.get("usage") or {}
        if "cost" in usage:
            try:
                return float(usage["cost"])
            except (ValueError, TypeError):
                pass

        return None
