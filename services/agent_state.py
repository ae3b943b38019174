"""
Ephemeral per-conversation agent state backed by SQLite.

Plugins use this store to remember short-lived facts between turns, for
example "a wellness check question is pending for this conversation". Every
record belongs to a (conversation_id, domain_id, state_type) tuple and
expires `ttl_seconds` after it was saved.

Semantics:
- Reads only ever return active records: not resolved, not superseded by a
  newer save of the same tuple, and `expires_at` strictly in the future. A
  TTL of 0 therefore produces a record that is never visible.
- Saving a tuple supersedes its previous active record in the same
  transaction, so at most one record per tuple is active.
- Expired records are physically deleted by `sweep_expired`, which the
  background sweeper calls periodically; reads do not depend on the sweep.

Timestamps are stored as fixed-width ISO 8601 UTC strings (see
`shared.utils.to_iso`), which makes SQL string comparison chronological. The
clock is injectable so expiry can be tested without sleeping.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from services.database import connect, init_schema, storage_operation, transaction
from shared.models import AgentStateRecord
from shared.utils import from_iso, generate_id, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS agent_states (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        domain_id TEXT NOT NULL,
        state_type TEXT NOT NULL,
        state_data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        superseded_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agent_states_lookup ON agent_states (conversation_id, domain_id, state_type)",
    "CREATE INDEX IF NOT EXISTS idx_agent_states_expires ON agent_states (expires_at)",
]

ACTIVE_CONDITION = "resolved = 0 AND superseded_at IS NULL AND expires_at > ?"


def _row_to_record(row: sqlite3.Row) -> AgentStateRecord:
    return AgentStateRecord(
        id=row['id'],
        conversation_id=row['conversation_id'],
        domain_id=row['domain_id'],
        state_type=row['state_type'],
        data=json.loads(row['state_data']),
        created_at=from_iso(row['created_at']),
        expires_at=from_iso(row['expires_at']),
        resolved=bool(row['resolved']),
        superseded_at=from_iso(row['superseded_at']),
    )


class AgentStateStore:
    """
    SQLite-backed store for TTL-bound agent state.

    Args:
        db_path (str): Path to the SQLite database file.
        default_ttl_seconds (int): TTL used when `save_state` gets none.
        clock (Callable[[], datetime]): Source of the current UTC time.
    """

    def __init__(
        self,
        db_path: str,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if default_ttl_seconds < 0:
            raise ValueError("default_ttl_seconds must not be negative")
        self.db_path = db_path
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock
        init_schema(db_path, SCHEMA)

    def _find_active(
        self,
        con: sqlite3.Connection,
        conversation_id: str,
        domain_id: str,
        state_type: Optional[str],
        now: datetime,
    ) -> Optional[AgentStateRecord]:
        query = f"SELECT * FROM agent_states WHERE conversation_id = ? AND domain_id = ? AND {ACTIVE_CONDITION}"
        params: List[Any] = [conversation_id, domain_id, to_iso(now)]
        if state_type is not None:
            query += " AND state_type = ?"
            params.append(state_type)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        row = con.execute(query, params).fetchone()
        return _row_to_record(row) if row else None

    def _insert(
        self,
        con: sqlite3.Connection,
        conversation_id: str,
        domain_id: str,
        state_type: str,
        data: Dict[str, Any],
        now: datetime,
        expires_at: datetime,
    ) -> str:
        now_iso = to_iso(now)
        con.execute(
            f"""
            UPDATE agent_states SET superseded_at = ?
            WHERE conversation_id = ? AND domain_id = ? AND state_type = ? AND {ACTIVE_CONDITION}
            """,
            (now_iso, conversation_id, domain_id, state_type, now_iso),
        )
        state_id = generate_id()
        con.execute(
            """
            INSERT INTO agent_states (
                id, conversation_id, domain_id, state_type, state_data, created_at, expires_at, resolved, superseded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL)
            """,
            (
                state_id, conversation_id, domain_id, state_type,
                json.dumps(data, ensure_ascii=False), now_iso, to_iso(expires_at),
            ),
        )
        return state_id

    def save_state(
        self,
        conversation_id: str,
        domain_id: str,
        state_type: str,
        data: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> str:
        """
        Save state for a tuple, superseding its previous active record.

        Args:
            conversation_id (str): Conversation the state belongs to.
            domain_id (str): Domain that owns the state.
            state_type (str): Domain-defined kind of state.
            data (Dict[str, Any]): JSON-serializable payload.
            ttl_seconds (int, optional): Lifetime in seconds; defaults to the
                store's default TTL. 0 expires immediately.

        Returns:
            str: The id of the new record.

        Raises:
            ValueError: If `ttl_seconds` is negative.
            StorageError: If the database write fails.
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl < 0:
            raise ValueError("ttl_seconds must not be negative")

        now = self.clock()
        with storage_operation("agent_state.save"), connect(self.db_path) as con:
            with transaction(con):
                state_id = self._insert(
                    con, conversation_id, domain_id, state_type, data, now, now + timedelta(seconds=ttl)
                )

        logger.debug(
            f"[AgentStateStore] Saved {domain_id}/{state_type} with ttl {ttl}s",
            extra={'conversation_id': conversation_id, 'domain_id': domain_id}
        )
        return state_id

    def get_record(
        self, conversation_id: str, domain_id: str, state_type: Optional[str] = None
    ) -> Optional[AgentStateRecord]:
        """Newest active record for the tuple; any state type when `state_type` is None."""
        now = self.clock()
        with storage_operation("agent_state.get"), connect(self.db_path) as con:
            return self._find_active(con, conversation_id, domain_id, state_type, now)

    def get_state(
        self, conversation_id: str, domain_id: str, state_type: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Payload of the newest active record, or None."""
        record = self.get_record(conversation_id, domain_id, state_type)
        return record.data if record else None

    def get_state_with_metadata(
        self, conversation_id: str, domain_id: str, state_type: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        record = self.get_record(conversation_id, domain_id, state_type)
        if record is None:
            return None
        return {
            'data': record.data,
            'metadata': {
                'id': record.id,
                'state_type': record.state_type,
                'created_at': to_iso(record.created_at),
                'expires_at': to_iso(record.expires_at),
            },
        }

    def get_states_for_domain(self, domain_id: str) -> List[AgentStateRecord]:
        """All active records of a domain across conversations, newest first."""
        now = self.clock()
        with storage_operation("agent_state.get_for_domain"), connect(self.db_path) as con:
            rows = con.execute(
                f"SELECT * FROM agent_states WHERE domain_id = ? AND {ACTIVE_CONDITION} "
                "ORDER BY created_at DESC, rowid DESC",
                (domain_id, to_iso(now)),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def resolve_state(self, conversation_id: str, domain_id: str, state_type: Optional[str] = None) -> bool:
        """
        Mark active state as resolved so it is no longer returned.

        Returns:
            bool: True if at least one active record was resolved.
        """
        now = self.clock()
        query = (
            f"UPDATE agent_states SET resolved = 1 "
            f"WHERE conversation_id = ? AND domain_id = ? AND {ACTIVE_CONDITION}"
        )
        params: List[Any] = [conversation_id, domain_id, to_iso(now)]
        if state_type is not None:
            query += " AND state_type = ?"
            params.append(state_type)

        with storage_operation("agent_state.resolve"), connect(self.db_path) as con:
            with transaction(con):
                updated = con.execute(query, params).rowcount
        return updated > 0

    def resolve_state_by_id(self, state_id: str) -> bool:
        """
        Resolve a record by id. Idempotent: resolving an already resolved
        record succeeds again.

        Returns:
            bool: True if the record exists.
        """
        with storage_operation("agent_state.resolve_by_id"), connect(self.db_path) as con:
            with transaction(con):
                updated = con.execute(
                    "UPDATE agent_states SET resolved = 1 WHERE id = ?", (state_id,)
                ).rowcount
        return updated > 0

    def update_state(
        self,
        conversation_id: str,
        domain_id: str,
        state_type: str,
        updates: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Shallow-merge `updates` into the active payload and save it as a new record.

        The read and the write happen in one transaction. Without `ttl_seconds`
        the new record keeps the expiry instant of the record it replaces.

        Returns:
            bool: False (and nothing written) when no active record exists.
        """
        if ttl_seconds is not None and ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")

        now = self.clock()
        with storage_operation("agent_state.update"), connect(self.db_path) as con:
            with transaction(con):
                current = self._find_active(con, conversation_id, domain_id, state_type, now)
                if current is None:
                    return False
                expires_at = current.expires_at if ttl_seconds is None else now + timedelta(seconds=ttl_seconds)
                self._insert(
                    con, conversation_id, domain_id, state_type, {**current.data, **updates}, now, expires_at
                )
        return True

    def clear_conversation_states(self, conversation_id: str) -> int:
        """Delete every record of a conversation; returns the number deleted."""
        with storage_operation("agent_state.clear"), connect(self.db_path) as con:
            with transaction(con):
                deleted = con.execute(
                    "DELETE FROM agent_states WHERE conversation_id = ?", (conversation_id,)
                ).rowcount
        logger.info(f"[AgentStateStore] Cleared {deleted} states", extra={'conversation_id': conversation_id})
        return deleted

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete every record whose expiry instant has been reached.

        Resolved and superseded records are deleted too once expired.

        Args:
            now (datetime, optional): Reference time; defaults to the store clock.

        Returns:
            int: Number of deleted records.
        """
        now = now or self.clock()
        with storage_operation("agent_state.sweep"), connect(self.db_path) as con:
            with transaction(con):
                deleted = con.execute(
                    "DELETE FROM agent_states WHERE expires_at <= ?", (to_iso(now),)
                ).rowcount
        return deleted
