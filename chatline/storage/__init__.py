"""
Conversation persistence for chatline.
"""
from chatline.storage.models import Conversation, Turn
from chatline.storage.sqlite_store import SQLiteStore

__all__ = ["Conversation", "Turn", "SQLiteStore"]
