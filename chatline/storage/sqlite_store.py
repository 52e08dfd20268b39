"""
SQLite storage for conversations and turns.
This is the source of truth - every turn, in order, with the model that wrote it.
Single portable file. Query with SQL. Export to JSON.

Turn positions are assigned by the database inside the insert itself, so two
writers appending to the same conversation still get distinct, gap-free
sequence numbers.
"""

import sqlite3
import json
import logging
from pathlib import Path
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from chatline.errors import ModelLocked, PersistenceError
from chatline.storage.models import DEFAULT_TITLE, Conversation, Turn, utcnow

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    model_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS turns (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    model_name TEXT DEFAULT NULL,
    sequence_index INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (conversation_id, sequence_index),
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id);
CREATE INDEX IF NOT EXISTS idx_conversations_updated
    ON conversations(updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_turns_conversation
    ON turns(conversation_id, sequence_index);
"""

APPEND_TURN = """
INSERT INTO turns
    (id, conversation_id, role, content, model_name, sequence_index, created_at)
SELECT ?, ?, ?, ?, ?, COALESCE(MAX(sequence_index), -1) + 1, ?
FROM turns
WHERE conversation_id = ?
"""


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        model_id=row["model_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_turn(row: sqlite3.Row) -> Turn:
    return Turn(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=json.loads(row["content"]),
        model_name=row["model_name"],
        sequence_index=row["sequence_index"],
        created_at=row["created_at"],
    )


class SQLiteStore:
    """Thread-safe SQLite conversation store (one connection per call)."""

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ─ Conversations ─────────────────────────────────────────────────────

    def create_conversation(
        self,
        user_id: str,
        model_id: str,
        title: str | None = None,
    ) -> Conversation:
        """Create an empty conversation owned by user_id."""
        conv = Conversation(user_id=user_id, model_id=model_id, title=title or DEFAULT_TITLE)
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations
                   (id, user_id, title, model_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (conv.id, conv.user_id, conv.title, conv.model_id,
                 conv.created_at, conv.updated_at),
            )
        logger.debug("Created conversation %s (user=%s, model=%s)", conv.id, user_id, model_id)
        return conv

    def get_conversation(self, conversation_id: str, user_id: str | None = None) -> Conversation | None:
        """
        Fetch a conversation. When user_id is given, conversations owned by
        anyone else are reported as missing.
        """
        with self._connect() as conn:
            if user_id is None:
                row = conn.execute(
                    "SELECT * FROM conversations WHERE id = ?",
                    (conversation_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                    (conversation_id, user_id),
                ).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(self, user_id: str, include_empty: bool = False) -> list[dict]:
        """Conversations for a user, most recently active first, with turn counts."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT c.*,
                          (SELECT COUNT(*) FROM turns t
                           WHERE t.conversation_id = c.id) AS turn_count
                   FROM conversations c
                   WHERE c.user_id = ?
                   ORDER BY c.updated_at DESC""",
                (user_id,),
            ).fetchall()

        result = []
        for row in rows:
            if not include_empty and row["turn_count"] == 0:
                continue
            entry = _row_to_conversation(row).to_dict()
            entry["turn_count"] = row["turn_count"]
            result.append(entry)
        return result

    def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        title: str | None = None,
        model_id: str | None = None,
    ) -> Conversation | None:
        """
        Update title and/or model. The model is locked once any turn exists;
        changing it then raises ModelLocked. Returns None if not found.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
            if not row:
                return None
            conv = _row_to_conversation(row)

            if model_id is not None and model_id != conv.model_id:
                count = conn.execute(
                    "SELECT COUNT(*) FROM turns WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()[0]
                if count > 0:
                    raise ModelLocked(conversation_id)
                conv.model_id = model_id

            if title is not None:
                conv.title = title

            conv.updated_at = utcnow()
            conn.execute(
                """UPDATE conversations
                   SET title = ?, model_id = ?, updated_at = ?
                   WHERE id = ?""",
                (conv.title, conv.model_id, conv.updated_at, conversation_id),
            )
        return conv

    def update_title(self, conversation_id: str, title: str) -> None:
        """Overwrite the title and bump last activity."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, utcnow(), conversation_id),
            )
        logger.debug("Retitled conversation %s: %s", conversation_id, title)

    def touch_conversation(self, conversation_id: str) -> None:
        """Bump the last-activity timestamp."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (utcnow(), conversation_id),
            )

    def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Delete a conversation and all its turns. Returns False if not found."""
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
            deleted = cur.rowcount
        return deleted > 0

    def delete_empty_conversations(
        self,
        user_id: str | None = None,
        min_age_seconds: float = 0,
    ) -> int:
        """
        Delete conversations that never received a turn.
        Only conversations created at least min_age_seconds ago are removed.
        Returns the number deleted.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)).isoformat()
        query = """DELETE FROM conversations
                   WHERE created_at <= ?
                     AND NOT EXISTS (SELECT 1 FROM turns t
                                     WHERE t.conversation_id = conversations.id)"""
        params: tuple = (cutoff,)
        if user_id is not None:
            query += " AND user_id = ?"
            params = (cutoff, user_id)

        with self._connect() as conn:
            cur = conn.execute(query, params)
            deleted = cur.rowcount
        if deleted:
            logger.info("Deleted %d empty conversations", deleted)
        return deleted

    # ─ Turns ─────────────────────────────────────────────────────────────

    def append_turn(
        self,
        conversation_id: str,
        role: str,
        content: list[dict],
        model_name: str | None = None,
    ) -> Turn:
        """
        Append a turn at the next position of its conversation.
        The position is computed and written in one statement.
        """
        turn = Turn(
            conversation_id=conversation_id,
            role=role,
            content=content,
            model_name=model_name,
        )
        with self._connect() as conn:
            conn.execute(
                APPEND_TURN,
                (turn.id, conversation_id, role, json.dumps(content),
                 model_name, turn.created_at, conversation_id),
            )
            turn.sequence_index = conn.execute(
                "SELECT sequence_index FROM turns WHERE id = ?",
                (turn.id,),
            ).fetchone()[0]
        logger.debug(
            "Stored turn %s (role=%s, conv=%s, seq=%d)",
            turn.id, role, conversation_id, turn.sequence_index,
        )
        return turn

    def list_turns(self, conversation_id: str) -> list[Turn]:
        """All turns of a conversation in sequence order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM turns WHERE conversation_id = ? ORDER BY sequence_index",
                (conversation_id,),
            ).fetchall()
        return [_row_to_turn(r) for r in rows]

    def count_turns(self, conversation_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM turns WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()[0]

    def first_turn(self, conversation_id: str, role: str) -> Turn | None:
        """Earliest turn with the given role."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM turns
                   WHERE conversation_id = ? AND role = ?
                   ORDER BY sequence_index
                   LIMIT 1""",
                (conversation_id, role),
            ).fetchone()
        return _row_to_turn(row) if row else None

    def export_conversation(self, conversation_id: str) -> dict | None:
        """Conversation metadata plus its ordered turns, JSON-ready."""
        conv = self.get_conversation(conversation_id)
        if conv is None:
            return None
        return {
            "conversation": conv.to_dict(),
            "turns": [t.to_dict() for t in self.list_turns(conversation_id)],
        }
