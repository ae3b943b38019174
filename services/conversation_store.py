"""
Conversation, message and state-snapshot persistence backed by SQLite.

Tables:
- conversations: one row per conversation with its owner and status
- messages: user and assistant messages of a conversation
- conversation_states: append-only `ConversationState` snapshots

State snapshots are never updated in place. The current state of a
conversation is the snapshot with the latest `created_at` (ties broken by
insertion order); history queries return the most recent snapshots first.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from services.database import connect, init_schema, storage_operation, transaction
from shared.models import ConversationState
from shared.utils import generate_id, to_iso, utc_now

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        started_at TEXT NOT NULL,
        last_activity_at TEXT NOT NULL,
        metadata TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations (user_id, last_activity_at)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        metadata TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS conversation_states (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        mode TEXT NOT NULL,
        snapshot TEXT NOT NULL,
        last_activity_at TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_states_conversation ON conversation_states (conversation_id, created_at)",
]


class ConversationStore:
    """SQLite store for conversations, their messages and state snapshots."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_schema(db_path, SCHEMA)

    # --- Conversations ---

    def create_conversation(self, user_id: str, conversation_id: Optional[str] = None,
                            metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        now_iso = to_iso(utc_now())
        conversation = {
            'id': conversation_id or generate_id(),
            'user_id': user_id,
            'status': STATUS_ACTIVE,
            'started_at': now_iso,
            'last_activity_at': now_iso,
            'metadata': metadata or {},
        }
        with storage_operation("conversation.create"), connect(self.db_path) as con:
            with transaction(con):
                con.execute(
                    """
                    INSERT INTO conversations (id, user_id, status, started_at, last_activity_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation['id'], user_id, STATUS_ACTIVE, now_iso, now_iso,
                        json.dumps(conversation['metadata'], ensure_ascii=False),
                    ),
                )
        logger.info(f"[ConversationStore] Conversation created for user {user_id}",
                    extra={'conversation_id': conversation['id']})
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with storage_operation("conversation.get"), connect(self.db_path) as con:
            row = con.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return self._conversation_from_row(row) if row else None

    def find_active_conversation(self, user_id: str) -> Optional[Dict[str, Any]]:
        """The user's most recently active conversation that is not archived."""
        with storage_operation("conversation.find_active"), connect(self.db_path) as con:
            row = con.execute(
                """
                SELECT * FROM conversations WHERE user_id = ? AND status = ?
                ORDER BY last_activity_at DESC, rowid DESC LIMIT 1
                """,
                (user_id, STATUS_ACTIVE),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def archive_conversation(self, conversation_id: str) -> bool:
        with storage_operation("conversation.archive"), connect(self.db_path) as con:
            with transaction(con):
                updated = con.execute(
                    "UPDATE conversations SET status = ? WHERE id = ?", (STATUS_ARCHIVED, conversation_id)
                ).rowcount
        return updated > 0

    @staticmethod
    def _conversation_from_row(row) -> Dict[str, Any]:
        return {
            'id': row['id'],
            'user_id': row['user_id'],
            'status': row['status'],
            'started_at': row['started_at'],
            'last_activity_at': row['last_activity_at'],
            'metadata': json.loads(row['metadata']) if row['metadata'] else {},
        }

    # --- Messages ---

    def get_recent_messages(self, conversation_id: str, limit: int = 10) -> List[Dict[str, str]]:
        """The last `limit` messages in chronological order, as role/content dicts."""
        with storage_operation("messages.recent"), connect(self.db_path) as con:
            rows = con.execute(
                """
                SELECT role, content FROM messages WHERE conversation_id = ?
                ORDER BY timestamp DESC, rowid DESC LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [{'role': row['role'], 'content': row['content']} for row in reversed(rows)]

    # --- Turn persistence ---

    def save_turn(self, state: ConversationState, user_message: str, reply: str) -> str:
        """
        Persist one completed turn atomically.

        Writes the user message, the assistant reply and a new state snapshot
        and bumps the conversation's last activity, all in one transaction.

        Returns:
            str: The id of the stored assistant message.

        Raises:
            StorageError: If any write fails; nothing of the turn is stored then.
        """
        now = utc_now()
        user_message_id = generate_id()
        reply_id = generate_id()
        with storage_operation("turn.save"), connect(self.db_path) as con:
            with transaction(con):
                con.execute(
                    "INSERT INTO messages (id, conversation_id, role, content, timestamp, metadata) VALUES (?, ?, ?, ?, ?, ?)",
                    (user_message_id, state.conversation_id, 'user', user_message, to_iso(now), None),
                )
                con.execute(
                    "INSERT INTO messages (id, conversation_id, role, content, timestamp, metadata) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        reply_id, state.conversation_id, 'assistant', reply, to_iso(utc_now()),
                        json.dumps({'mode': state.mode.value}),
                    ),
                )
                self._insert_snapshot(con, state)
                con.execute(
                    "UPDATE conversations SET last_activity_at = ? WHERE id = ?",
                    (to_iso(utc_now()), state.conversation_id),
                )
        return reply_id

    # --- State snapshots ---

    def _insert_snapshot(self, con, state: ConversationState) -> None:
        con.execute(
            """
            INSERT INTO conversation_states (id, conversation_id, mode, snapshot, last_activity_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                state.id, state.conversation_id, state.mode.value,
                json.dumps(state.to_dict(), ensure_ascii=False, default=str),
                to_iso(state.last_activity_at), to_iso(state.created_at),
            ),
        )

    def save_state(self, state: ConversationState) -> None:
        """Append a snapshot. The state must carry a fresh id and created_at."""
        with storage_operation("state.save"), connect(self.db_path) as con:
            with transaction(con):
                self._insert_snapshot(con, state)

    def get_latest_state(self, conversation_id: str) -> Optional[ConversationState]:
        with storage_operation("state.latest"), connect(self.db_path) as con:
            row = con.execute(
                """
                SELECT snapshot FROM conversation_states WHERE conversation_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
        return ConversationState.from_dict(json.loads(row['snapshot'])) if row else None

    def get_state_history(self, conversation_id: str, limit: int = 10) -> List[ConversationState]:
        """The most recent `limit` snapshots, newest first."""
        with storage_operation("state.history"), connect(self.db_path) as con:
            rows = con.execute(
                """
                SELECT snapshot FROM conversation_states WHERE conversation_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [ConversationState.from_dict(json.loads(row['snapshot'])) for row in rows]
