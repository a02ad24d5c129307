import asyncio
import json
import uuid
from datetime import UTC, datetime

import aiosqlite

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'regular',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_keys (
    user_id TEXT NOT NULL REFERENCES users(id),
    provider TEXT NOT NULL,
    encrypted_key TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, provider)
);

CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT 'New conversation',
    visibility TEXT NOT NULL DEFAULT 'private',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    role TEXT NOT NULL,
    parts TEXT NOT NULL,
    attachments TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages (chat_id, created_at);

CREATE TABLE IF NOT EXISTS votes (
    chat_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    is_upvoted INTEGER NOT NULL,
    PRIMARY KEY (chat_id, message_id)
);

CREATE TABLE IF NOT EXISTS streams (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT,
    kind TEXT NOT NULL DEFAULT 'agent',
    user_id TEXT NOT NULL,
    PRIMARY KEY (id, created_at)
);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _uuid() -> str:
    return str(uuid.uuid4())


def _message_from_row(row: aiosqlite.Row) -> dict:
    msg = dict(row)
    msg["parts"] = json.loads(msg["parts"])
    msg["attachments"] = json.loads(msg["attachments"])
    return msg


class SQLiteStore:
    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None
        # Every write commits on the shared connection, so writes must not interleave
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    async def _write(self, sql: str, params: tuple) -> None:
        async with self._write_lock:
            await self.db.execute(sql, params)
            await self.db.commit()

    # --- Users and credentials ---

    async def create_user(self, email: str, user_type: str = "regular") -> dict:
        uid = _uuid()
        now = _now()
        await self._write(
            "INSERT INTO users (id, email, type, created_at) VALUES (?, ?, ?, ?)",
            (uid, email, user_type, now),
        )
        return {"id": uid, "email": email, "type": user_type, "created_at": now}

    async def save_api_key(self, user_id: str, provider: str, encrypted_key: str) -> None:
        await self._write(
            """INSERT INTO api_keys (user_id, provider, encrypted_key, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (user_id, provider)
               DO UPDATE SET encrypted_key = excluded.encrypted_key, updated_at = excluded.updated_at""",
            (user_id, provider, encrypted_key, _now()),
        )

    async def get_api_key(self, user_id: str, provider: str) -> str | None:
        cursor = await self.db.execute(
            "SELECT encrypted_key FROM api_keys WHERE user_id = ? AND provider = ?",
            (user_id, provider),
        )
        row = await cursor.fetchone()
        return row["encrypted_key"] if row else None

    async def list_api_key_providers(self, user_id: str) -> list[str]:
        cursor = await self.db.execute(
            "SELECT provider FROM api_keys WHERE user_id = ? ORDER BY provider", (user_id,)
        )
        rows = await cursor.fetchall()
        return [r["provider"] for r in rows]

    async def delete_api_key(self, user_id: str, provider: str) -> None:
        await self._write(
            "DELETE FROM api_keys WHERE user_id = ? AND provider = ?", (user_id, provider)
        )

    # --- Chats ---

    async def create_chat(
        self,
        chat_id: str,
        user_id: str,
        title: str = "New conversation",
        visibility: str = "private",
    ) -> dict:
        now = _now()
        await self._write(
            "INSERT INTO chats (id, user_id, title, visibility, created_at) VALUES (?, ?, ?, ?, ?)",
            (chat_id, user_id, title, visibility, now),
        )
        return {
            "id": chat_id,
            "user_id": user_id,
            "title": title,
            "visibility": visibility,
            "created_at": now,
        }

    async def get_chat(self, chat_id: str) -> dict | None:
        cursor = await self.db.execute(
            "SELECT id, user_id, title, visibility, created_at FROM chats WHERE id = ?",
            (chat_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_chats(self, user_id: str, limit: int = 50) -> list[dict]:
        cursor = await self.db.execute(
            """SELECT id, user_id, title, visibility, created_at FROM chats
               WHERE user_id = ? ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def delete_chat(self, chat_id: str) -> dict | None:
        """Delete a chat and everything hanging off it.

        The store has no foreign-key cascades, so dependents go first: votes,
        messages and stream records, then the chat row itself. The batch holds
        the write lock so no other commit can land between its statements.
        """
        async with self._write_lock:
            chat = await self.get_chat(chat_id)
            if chat is None:
                return None
            try:
                await self.db.execute("DELETE FROM votes WHERE chat_id = ?", (chat_id,))
                await self.db.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
                await self.db.execute("DELETE FROM streams WHERE chat_id = ?", (chat_id,))
                await self.db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
                await self.db.commit()
            except aiosqlite.Error:
                await self.db.rollback()
                raise
        return chat

    # --- Messages ---

    async def add_message(
        self,
        chat_id: str,
        role: str,
        parts: list[dict],
        attachments: list[dict] | None = None,
        message_id: str | None = None,
        created_at: str | None = None,
    ) -> dict:
        mid = message_id or _uuid()
        now = created_at or _now()
        attachments = attachments or []
        await self._write(
            "INSERT INTO messages (id, chat_id, role, parts, attachments, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (mid, chat_id, role, json.dumps(parts), json.dumps(attachments), now),
        )
        return {
            "id": mid,
            "chat_id": chat_id,
            "role": role,
            "parts": parts,
            "attachments": attachments,
            "created_at": now,
        }

    async def get_messages(self, chat_id: str) -> list[dict]:
        cursor = await self.db.execute(
            """SELECT id, chat_id, role, parts, attachments, created_at FROM messages
               WHERE chat_id = ? ORDER BY created_at, rowid""",
            (chat_id,),
        )
        rows = await cursor.fetchall()
        return [_message_from_row(r) for r in rows]

    async def get_message(self, message_id: str) -> dict | None:
        cursor = await self.db.execute(
            "SELECT id, chat_id, role, parts, attachments, created_at FROM messages WHERE id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        return _message_from_row(row) if row else None

    async def count_user_messages(self, user_id: str, since: str) -> int:
        """Count user-authored messages in the user's chats created at or after ``since``."""
        cursor = await self.db.execute(
            """SELECT COUNT(m.id) AS cnt FROM messages m
               JOIN chats c ON m.chat_id = c.id
               WHERE c.user_id = ? AND m.role = 'user' AND m.created_at >= ?""",
            (user_id, since),
        )
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    # --- Votes ---

    async def vote_message(self, chat_id: str, message_id: str, upvoted: bool) -> None:
        await self._write(
            """INSERT INTO votes (chat_id, message_id, is_upvoted) VALUES (?, ?, ?)
               ON CONFLICT (chat_id, message_id) DO UPDATE SET is_upvoted = excluded.is_upvoted""",
            (chat_id, message_id, int(upvoted)),
        )

    async def get_votes(self, chat_id: str) -> list[dict]:
        cursor = await self.db.execute(
            "SELECT chat_id, message_id, is_upvoted FROM votes WHERE chat_id = ?", (chat_id,)
        )
        rows = await cursor.fetchall()
        return [{**dict(r), "is_upvoted": bool(r["is_upvoted"])} for r in rows]

    # --- Streams ---

    async def create_stream_id(self, stream_id: str, chat_id: str) -> None:
        await self._write(
            "INSERT INTO streams (id, chat_id, created_at) VALUES (?, ?, ?)",
            (stream_id, chat_id, _now()),
        )

    async def get_stream_ids(self, chat_id: str) -> list[str]:
        cursor = await self.db.execute(
            "SELECT id FROM streams WHERE chat_id = ? ORDER BY created_at, rowid", (chat_id,)
        )
        rows = await cursor.fetchall()
        return [r["id"] for r in rows]

    # --- Documents ---

    async def save_document(
        self,
        document_id: str,
        user_id: str,
        title: str,
        content: str | None,
        kind: str = "agent",
    ) -> dict:
        """Insert a new version of a document; the latest version is the current one."""
        now = _now()
        await self._write(
            "INSERT INTO documents (id, created_at, title, content, kind, user_id) VALUES (?, ?, ?, ?, ?, ?)",
            (document_id, now, title, content, kind, user_id),
        )
        return {
            "id": document_id,
            "created_at": now,
            "title": title,
            "content": content,
            "kind": kind,
            "user_id": user_id,
        }

    async def get_document(self, document_id: str) -> dict | None:
        cursor = await self.db.execute(
            """SELECT id, created_at, title, content, kind, user_id FROM documents
               WHERE id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1""",
            (document_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None
