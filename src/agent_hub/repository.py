"""SQLite-backed repository for chat sessions."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

MessageRecord = dict[str, Any]
SessionRecord = dict[str, Any]

_BASELINE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    user_id TEXT,
    agent_id TEXT NOT NULL,
    thread_id TEXT,
    conversation_key TEXT UNIQUE,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    model TEXT,
    metadata TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tool_executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    turn_message_id INTEGER,
    call_id TEXT,
    tool_name TEXT NOT NULL,
    arguments TEXT,
    result TEXT,
    error_kind TEXT,
    duration_ms INTEGER,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_tool_executions_session_id ON tool_executions(session_id);
"""

# Columns newer deployments carry; older databases may lack them.
_OPTIONAL_COLUMNS = {
    "messages": {
        "attachments": "TEXT",
        "tool_calls": "TEXT",
        "truncated": "INTEGER NOT NULL DEFAULT 0",
    },
    "sessions": {
        "title": "TEXT",
    },
}


@dataclass(frozen=True)
class SchemaCapabilities:
    """Which optional columns the active database supports."""

    attachments: bool = False
    tool_calls: bool = False
    truncated: bool = False
    titles: bool = False


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


def _decode_json(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


class ChatRepository:
    """Persist chat sessions, messages, and tool audit rows."""

    def __init__(self, database_path: Path, *, migrate: bool = True):
        self._path = database_path
        self._migrate = migrate
        self._connection: aiosqlite.Connection | None = None
        self._capabilities = SchemaCapabilities()

    @property
    def capabilities(self) -> SchemaCapabilities:
        return self._capabilities

    async def initialize(self) -> None:
        """Open the SQLite connection, ensure tables exist and probe columns."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._connection.executescript(_BASELINE_SCHEMA)
        await self._connection.commit()
        if self._migrate:
            for table, columns in _OPTIONAL_COLUMNS.items():
                for column, definition in columns.items():
                    await self._ensure_column(table, column, definition)
        self._capabilities = await self._probe_capabilities()

    async def _table_columns(self, table: str) -> set[str]:
        assert self._connection is not None
        cursor = await self._connection.execute(f"PRAGMA table_info({table})")
        rows = await cursor.fetchall()
        await cursor.close()
        return {row[1] for row in rows}

    async def _ensure_column(self, table: str, column: str, definition: str) -> None:
        """Ensure a column exists on a table, adding it if necessary."""

        assert self._connection is not None
        if column in await self._table_columns(table):
            return
        await self._connection.execute(
            f"ALTER TABLE {table} ADD COLUMN {column} {definition}"
        )
        await self._connection.commit()

    async def _probe_capabilities(self) -> SchemaCapabilities:
        columns = await self._table_columns("messages")
        session_columns = await self._table_columns("sessions")
        return SchemaCapabilities(
            attachments="attachments" in columns,
            tool_calls="tool_calls" in columns,
            truncated="truncated" in columns,
            titles="title" in session_columns,
        )

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def create_session(
        self,
        agent_id: str,
        *,
        user_id: str | None = None,
        conversation_key: str | None = None,
        title: str | None = None,
    ) -> tuple[str, bool]:
        """Create a session, or return the one already bound to the key.

        Returns the session id and whether this call created it.
        """

        assert self._connection is not None
        session_id = uuid.uuid4().hex
        columns = ["session_id", "user_id", "agent_id", "conversation_key"]
        values: list[Any] = [session_id, user_id, agent_id, conversation_key]
        if title and self._capabilities.titles:
            columns.append("title")
            values.append(title)
        placeholders = ", ".join("?" for _ in columns)
        cursor = await self._connection.execute(
            f"""
            INSERT INTO sessions({', '.join(columns)})
            VALUES ({placeholders})
            ON CONFLICT(conversation_key) DO NOTHING
            """,
            values,
        )
        inserted = cursor.rowcount == 1
        await cursor.close()
        await self._connection.commit()
        if inserted or conversation_key is None:
            return session_id, True

        cursor = await self._connection.execute(
            "SELECT session_id FROM sessions WHERE conversation_key = ?",
            (conversation_key,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:  # pragma: no cover - conflict implies a row
            raise RuntimeError(f"Session for {conversation_key} vanished")
        return row["session_id"], False

    async def get_session(self, session_id: str) -> SessionRecord | None:
        assert self._connection is not None
        title = "title" if self._capabilities.titles else "NULL AS title"
        cursor = await self._connection.execute(
            f"""
            SELECT session_id, user_id, agent_id, thread_id, conversation_key,
                   {title}, created_at, updated_at
            FROM sessions
            WHERE session_id = ?
            LIMIT 1
            """,
            (session_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        record = dict(row)
        record["created_at"] = _normalize_db_timestamp(record["created_at"])
        record["updated_at"] = _normalize_db_timestamp(record["updated_at"])
        return record

    async def list_sessions(
        self, *, user_id: str | None = None, limit: int = 50
    ) -> list[SessionRecord]:
        """Return sessions newest activity first, with their message counts."""

        assert self._connection is not None
        title = "s.title" if self._capabilities.titles else "NULL"
        query = f"""
            SELECT s.session_id, s.user_id, s.agent_id, {title} AS title,
                   s.created_at, s.updated_at, COUNT(m.id) AS message_count
            FROM sessions AS s
            LEFT JOIN messages AS m ON m.session_id = s.session_id
        """
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE s.user_id = ?"
            params.append(user_id)
        query += """
            GROUP BY s.session_id
            ORDER BY s.updated_at DESC, s.rowid DESC
            LIMIT ?
        """
        params.append(max(limit, 0))
        cursor = await self._connection.execute(query, params)
        rows = await cursor.fetchall()
        await cursor.close()

        sessions: list[SessionRecord] = []
        for row in rows:
            record = dict(row)
            record["message_count"] = int(record["message_count"] or 0)
            record["created_at"] = _normalize_db_timestamp(record["created_at"])
            record["updated_at"] = _normalize_db_timestamp(record["updated_at"])
            sessions.append(record)
        return sessions

    async def count_sessions(self, conversation_key: str | None = None) -> int:
        assert self._connection is not None
        if conversation_key is None:
            cursor = await self._connection.execute("SELECT COUNT(*) FROM sessions")
        else:
            cursor = await self._connection.execute(
                "SELECT COUNT(*) FROM sessions WHERE conversation_key = ?",
                (conversation_key,),
            )
        row = await cursor.fetchone()
        await cursor.close()
        return int(row[0]) if row else 0

    async def set_thread_id(self, session_id: str, thread_id: str) -> str:
        """Bind a provider thread to the session unless one is already bound.

        Returns the thread id that is bound after the call.
        """

        assert self._connection is not None
        await self._connection.execute(
            """
            UPDATE sessions
            SET thread_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE session_id = ? AND thread_id IS NULL
            """,
            (thread_id, session_id),
        )
        await self._connection.commit()
        session = await self.get_session(session_id)
        if session is None or not session["thread_id"]:
            raise RuntimeError(f"Unable to bind thread for session {session_id}")
        return session["thread_id"]

    async def touch_session(self, session_id: str) -> None:
        assert self._connection is not None
        await self._connection.execute(
            "UPDATE sessions SET updated_at = CURRENT_TIMESTAMP WHERE session_id = ?",
            (session_id,),
        )
        await self._connection.commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        attachments: list[dict[str, Any]] | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
        truncated: bool = False,
        model: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Persist a single chat message and return its id."""

        assert self._connection is not None
        columns = ["session_id", "role", "content", "model", "metadata"]
        values: list[Any] = [
            session_id,
            role,
            content,
            model,
            json.dumps(metadata) if metadata else None,
        ]
        if self._capabilities.truncated:
            columns.append("truncated")
            values.append(1 if truncated else 0)
        if attachments and self._capabilities.attachments:
            columns.append("attachments")
            values.append(json.dumps(attachments))
        if tool_calls and self._capabilities.tool_calls:
            columns.append("tool_calls")
            values.append(json.dumps(tool_calls))

        placeholders = ", ".join("?" for _ in columns)
        cursor = await self._connection.execute(
            f"INSERT INTO messages({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        await self._connection.commit()
        try:
            inserted_id = cursor.lastrowid
        finally:
            await cursor.close()
        if inserted_id is None:
            raise RuntimeError("Insert failed: lastrowid is None")
        return int(inserted_id)

    async def get_messages(
        self, session_id: str, *, limit: int | None = None
    ) -> list[MessageRecord]:
        """Return conversation messages ordered by insertion.

        With ``limit`` only the newest messages are returned, still oldest first.
        """

        assert self._connection is not None
        optional = [
            column
            for column, supported in (
                ("truncated", self._capabilities.truncated),
                ("attachments", self._capabilities.attachments),
                ("tool_calls", self._capabilities.tool_calls),
            )
            if supported
        ]
        selected = ", ".join(
            ["id", "session_id", "role", "content", "model", "metadata"]
            + optional
            + ["created_at"]
        )
        query = f"SELECT {selected} FROM messages WHERE session_id = ? ORDER BY id DESC"
        params: tuple[Any, ...] = (session_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (session_id, limit)
        cursor = await self._connection.execute(query, params)
        rows = await cursor.fetchall()
        await cursor.close()

        messages: list[MessageRecord] = []
        for row in reversed(rows):
            keys = row.keys()
            message: MessageRecord = {
                "id": row["id"],
                "session_id": row["session_id"],
                "role": row["role"],
                "content": row["content"],
                "truncated": bool(row["truncated"]) if "truncated" in keys else False,
                "model": row["model"],
                "attachments": (
                    _decode_json(row["attachments"]) if "attachments" in keys else None
                )
                or [],
                "tool_calls": (
                    _decode_json(row["tool_calls"]) if "tool_calls" in keys else None
                ),
                "metadata": _decode_json(row["metadata"]) or {},
                "created_at": _normalize_db_timestamp(row["created_at"]),
            }
            messages.append(message)
        return messages

    # ------------------------------------------------------------------
    # Tool audit
    # ------------------------------------------------------------------
    async def add_tool_execution(
        self,
        session_id: str,
        *,
        tool_name: str,
        call_id: str | None,
        arguments: Any,
        result: Any,
        error_kind: str | None,
        duration_ms: int,
        turn_message_id: int | None = None,
    ) -> int:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            INSERT INTO tool_executions(
                session_id, turn_message_id, call_id, tool_name,
                arguments, result, error_kind, duration_ms
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                turn_message_id,
                call_id,
                tool_name,
                json.dumps(arguments, default=str),
                json.dumps(result, default=str),
                error_kind,
                duration_ms,
            ),
        )
        await self._connection.commit()
        try:
            inserted_id = cursor.lastrowid
        finally:
            await cursor.close()
        return int(inserted_id or 0)

    async def get_tool_executions(self, session_id: str) -> list[dict[str, Any]]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, turn_message_id, call_id, tool_name, arguments, result,
                   error_kind, duration_ms, created_at
            FROM tool_executions
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        executions: list[dict[str, Any]] = []
        for row in rows:
            record = dict(row)
            record["arguments"] = _decode_json(record["arguments"])
            record["result"] = _decode_json(record["result"])
            record["created_at"] = _normalize_db_timestamp(record["created_at"])
            executions.append(record)
        return executions


__all__ = ["ChatRepository", "MessageRecord", "SchemaCapabilities", "SessionRecord"]
