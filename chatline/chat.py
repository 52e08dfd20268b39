"""
Chat orchestrator: the core of chatline.

One call to handle() runs one chat request end to end:

  1. validate the caller and the conversation, resolve its locked model
  2. save the new user turn
  3. stream the provider's reply to the client as wire events
  4. save the assistant turn once the stream ends, touch the conversation
  5. on the first exchange, name the conversation in the background

Steps 1-2 run before handle() returns, so their errors reach the client as
a normal error response. Steps 3-5 run while the caller drains the returned
byte stream.

How a reply ends decides what gets saved:

  completed   full text saved as the assistant turn
  failed      provider error mid-stream; partial text discarded, stream
              cut short without text-end/finish/[DONE]
  aborted     client went away; the provider stream is closed and whatever
              text arrived so far is saved, if any
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from chatline.backends.base import ProviderDescriptor
from chatline.backends.registry import ModelRegistry
from chatline.errors import (
    ConversationNotFound,
    MissingConversation,
    PersistenceError,
    Unauthenticated,
)
from chatline.storage.models import ROLES, Conversation, flatten_text, normalize_content, text_part
from chatline.storage.sqlite_store import SQLiteStore
from chatline.stream import encode_text_stream, new_message_id
from chatline.titles import TitleSynthesizer

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
ABORTED = "aborted"


def project_turns(turns: list[dict]) -> list[dict]:
    """
    Reduce inbound messages to what providers accept: role + flattened text.
    Non-text fragments are dropped here.
    """
    projected = []
    for t in turns:
        role = t.get("role")
        if role not in ROLES:
            logger.debug("Skipping message with unsupported role %r", role)
            continue
        projected.append({"role": role, "content": flatten_text(normalize_content(t))})
    return projected


class ChatOrchestrator:
    """Sequences store, registry, encoder and titles for each chat request."""

    def __init__(
        self,
        store: SQLiteStore,
        registry: ModelRegistry,
        titles: TitleSynthesizer | None = None,
    ):
        self.store = store
        self.registry = registry
        self.titles = titles
        # Strong refs so fire-and-forget tasks are not garbage collected mid-flight
        self._background_tasks: set[asyncio.Task] = set()

    async def handle(
        self,
        conversation_id: str | None,
        turns: list[dict],
        user,
        system: str | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Validate and prepare a chat request, returning its event stream.
        Raises ChatError subclasses before any bytes are produced.
        """
        if user is None:
            raise Unauthenticated()
        if not conversation_id:
            raise MissingConversation()

        conversation = self.store.get_conversation(conversation_id, user_id=user.id)
        if conversation is None:
            raise ConversationNotFound()

        descriptor = self.registry.resolve(conversation.model_id)

        if turns and turns[-1].get("role") == "user":
            self._save_user_turn(conversation.id, turns[-1])

        prompt = project_turns(turns)
        logger.info(
            "Chat: conversation=%s model=%s (%s) turns=%d",
            conversation.id, conversation.model_id, descriptor.kind.value, len(prompt),
        )

        text_stream = self.registry.generate(descriptor, prompt, system)
        return self._stream(conversation, descriptor, text_stream)

    def _save_user_turn(self, conversation_id: str, message: dict):
        try:
            turn = self.store.append_turn(conversation_id, "user", normalize_content(message))
            logger.debug("Saved user turn %d for %s", turn.sequence_index, conversation_id)
        except PersistenceError as e:
            # Keep the chat going; the reply can still be generated
            logger.error("Failed to save user turn for %s: %s", conversation_id, e)

    async def _stream(
        self,
        conversation: Conversation,
        descriptor: ProviderDescriptor,
        text_stream: AsyncIterator[str],
    ) -> AsyncIterator[bytes]:
        buffer: list[str] = []
        outcome = ABORTED

        async def collect() -> AsyncIterator[str]:
            async for delta in text_stream:
                buffer.append(delta)
                yield delta

        try:
            async for chunk in encode_text_stream(collect(), message_id=new_message_id()):
                yield chunk
            outcome = COMPLETED
        except Exception as e:
            outcome = FAILED
            logger.error("Stream error for conversation %s: %s", conversation.id, e)
            raise
        finally:
            self._finish(conversation, descriptor, "".join(buffer), outcome)
            # Closes the provider connection if the client left mid-reply
            await text_stream.aclose()

    def _finish(
        self,
        conversation: Conversation,
        descriptor: ProviderDescriptor,
        text: str,
        outcome: str,
    ):
        """Persist the assistant turn according to how the stream ended."""
        if outcome == FAILED:
            logger.warning(
                "Discarding %d chars of partial reply for %s", len(text), conversation.id,
            )
            return
        if outcome == ABORTED and not text:
            logger.info("Client disconnected from %s before any text arrived", conversation.id)
            return
        if outcome == ABORTED:
            logger.info("Client disconnected from %s, saving %d chars", conversation.id, len(text))

        try:
            turn = self.store.append_turn(
                conversation.id, "assistant", [text_part(text)],
                model_name=descriptor.model_name,
            )
            self.store.touch_conversation(conversation.id)
        except PersistenceError as e:
            logger.error("Failed to save assistant turn for %s: %s", conversation.id, e)
            return

        logger.debug("Saved assistant turn %d for %s", turn.sequence_index, conversation.id)

        if turn.sequence_index == 1 and self.titles is not None:
            self._schedule_title(conversation.id, text)

    # ─ Titles ────────────────────────────────────────────────────────────

    def _schedule_title(self, conversation_id: str, assistant_text: str):
        task = asyncio.create_task(self._apply_title(conversation_id, assistant_text))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _apply_title(self, conversation_id: str, assistant_text: str):
        """Best effort. Any failure is logged and dropped here."""
        try:
            first_user = self.store.first_turn(conversation_id, "user")
            user_text = first_user.text if first_user else ""
            title = await self.titles.synthesize(user_text, assistant_text)
            self.store.update_title(conversation_id, title)
            logger.info("Titled conversation %s: %r", conversation_id, title)
        except Exception as e:
            logger.warning("Title generation failed for %s: %s", conversation_id, e)

    async def drain(self):
        """Wait for outstanding background tasks (shutdown, tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
