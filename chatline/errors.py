"""
Error taxonomy for chatline.

Everything raised before the first byte of a chat stream is a ChatError and
is rendered by the API layer as {"error": reason} with the matching status.
Once streaming has begun the same exceptions simply abort the stream.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for all errors with a client-facing reason."""

    status_code: int = 500
    default_reason: str = "Internal server error"

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class Unauthenticated(ChatError):
    status_code = 401
    default_reason = "Unauthorized"


class MissingConversation(ChatError):
    status_code = 400
    default_reason = "conversationId is required. Create a conversation first."


class ConversationNotFound(ChatError):
    # Same signal whether the id does not exist or belongs to someone else.
    status_code = 404
    default_reason = "Conversation not found"


class UnknownModel(ChatError):
    status_code = 400

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Invalid model: {model_id}")


class ModelLocked(ChatError):
    status_code = 409

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__("Model cannot be changed once a conversation has messages")


class ProviderError(ChatError):
    """Upstream generation failure (network, auth, HTTP error, error event)."""

    status_code = 502
    default_reason = "Model provider error"


class PersistenceError(ChatError):
    """Store read/write failure."""

    status_code = 500
    default_reason = "Storage error"
