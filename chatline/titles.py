"""
Title synthesizer: names a conversation after its first exchange.

Called once per conversation, after the first assistant turn is saved.
A single non-streaming call against a fast, cheap model.

Config:

    titles:
      enabled: true
      model: gpt-4o-mini     # any id known to the model registry

Failures raise ProviderError. The caller decides what to do with them;
the chat orchestrator logs and drops them.
"""
from __future__ import annotations

import logging
import re

from chatline.backends.registry import ModelRegistry
from chatline.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_TITLE_MODEL = "gpt-4o-mini"

TITLE_PROMPT = (
    "Based on this conversation, generate a brief, descriptive title (5-7 words max). "
    "Only respond with the title, nothing else.\n\n"
    "User: {user}\n"
    "Assistant: {assistant}"
)

_QUOTES = re.compile(r"^[\"']|[\"']$")


def clean_title(text: str) -> str:
    """Trim whitespace and one surrounding quote character on each side."""
    return _QUOTES.sub("", text.strip()).strip()


class TitleSynthesizer:
    """Generates short conversation titles through the model registry."""

    def __init__(self, registry: ModelRegistry, model_id: str = DEFAULT_TITLE_MODEL):
        self.registry = registry
        self.model_id = model_id

    @classmethod
    def from_config(cls, cfg: dict, registry: ModelRegistry) -> "TitleSynthesizer | None":
        """Build from the titles block, or None when titles are disabled."""
        t_cfg = cfg.get("titles", {}) or {}
        if not t_cfg.get("enabled", True):
            logger.info("Title synthesis disabled")
            return None
        model_id = t_cfg.get("model") or DEFAULT_TITLE_MODEL
        # Fail at startup rather than on every first exchange
        registry.resolve(model_id)
        return cls(registry, model_id)

    async def synthesize(self, user_text: str, assistant_text: str) -> str:
        prompt = TITLE_PROMPT.format(user=user_text, assistant=assistant_text)
        descriptor = self.registry.resolve(self.model_id)
        raw = await self.registry.complete(descriptor, [{"role": "user", "content": prompt}])

        title = clean_title(raw)
        if not title:
            raise ProviderError(f"{self.model_id}: empty title")

        logger.debug("Synthesized title: %r", title)
        return title
