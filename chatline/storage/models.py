"""
Data models for conversation storage.
These define the shape of data flowing between the store, the chat
orchestrator and the API.

Turn content is a list of typed fragments, e.g. [{"type": "text", "text": "hi"}].
Only text fragments are produced today; other types are stored as-is and
ignored when a turn is flattened for a provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

DEFAULT_TITLE = "New Chat"
ROLES = ("user", "assistant", "system")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def text_part(text: str) -> dict:
    """Build a single text fragment."""
    return {"type": "text", "text": text}


def flatten_text(parts: list[dict]) -> str:
    """Concatenate the text fragments of a content list, dropping other types."""
    return "".join(
        p.get("text", "") for p in parts
        if isinstance(p, dict) and p.get("type") == "text"
    )


def normalize_content(message: dict) -> list[dict]:
    """
    Return a message's content as a fragment list.

    Accepts the structured form ({"parts": [...]}) or the legacy flat form
    ({"content": "..."} or {"content": [...]}).
    """
    parts = message.get("parts")
    if isinstance(parts, list):
        return parts

    content = message.get("content")
    if isinstance(content, str):
        return [text_part(content)]
    if isinstance(content, list):
        return content
    return []


@dataclass
class Conversation:
    """A titled, owned sequence of turns bound to one model."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str = ""
    title: str = DEFAULT_TITLE
    model_id: str = ""
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "model_id": self.model_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Turn:
    """One persisted message. Immutable once written."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    role: str = ""           # "user", "assistant", "system"
    content: list[dict] = field(default_factory=list)
    model_name: str | None = None  # assistant turns only
    sequence_index: int = 0
    created_at: str = field(default_factory=utcnow)

    @property
    def text(self) -> str:
        return flatten_text(self.content)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "model_name": self.model_name,
            "sequence_index": self.sequence_index,
            "created_at": self.created_at,
        }

    def to_prompt_format(self) -> dict:
        """Role + flattened text, the shape providers receive."""
        return {"role": self.role, "content": self.text}
