"""
Resumable streams.

Every event a turn sends is also appended to a continuation log keyed by the
turn's stream id. A client that lost its connection asks for the chat's most
recent stream: while that stream is live it gets everything recorded so far
and then follows the log to the end. Once the stream has concluded the last
assistant message is replayed instead, but only if it is fresh.

The continuation backend is process-wide and initialized once at startup.
Without configuration a disabled backend is installed and every resume
request answers "no content".
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime

import aiosqlite

from ..api.sse import sse_append_message
from ..config import MAX_TURN_DURATION_SECS, RESUME_REPLAY_WINDOW_SECS, STREAM_POLL_INTERVAL_SECS
from ..errors import ChatError

logger = logging.getLogger(__name__)

CONTINUATION_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stream_state (
    stream_id TEXT PRIMARY KEY,
    concluded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_events (
    stream_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    event TEXT NOT NULL,
    PRIMARY KEY (stream_id, seq)
);
"""


class DisabledContinuations:
    """Stand-in used when no continuation store is configured."""

    enabled = False

    async def create(self, stream_id: str) -> None:
        pass

    async def append(self, stream_id: str, event: dict) -> None:
        pass

    async def conclude(self, stream_id: str) -> None:
        pass

    async def resume(self, stream_id: str) -> AsyncIterator[dict] | None:
        return None

    async def close(self) -> None:
        pass


class SQLiteContinuations:
    """Continuation log in its own SQLite file, followed by polling."""

    enabled = True

    def __init__(
        self,
        path: str,
        poll_interval: float = STREAM_POLL_INTERVAL_SECS,
        idle_timeout: float = MAX_TURN_DURATION_SECS,
    ) -> None:
        self._path = path
        self._poll_interval = poll_interval
        self._idle_timeout = idle_timeout
        self._db: aiosqlite.Connection | None = None
        self._seq: dict[str, int] = {}

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteContinuations not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(CONTINUATION_SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    async def create(self, stream_id: str) -> None:
        await self.db.execute(
            "INSERT INTO stream_state (stream_id, concluded, created_at) VALUES (?, 0, ?)",
            (stream_id, datetime.now(UTC).isoformat()),
        )
        await self.db.commit()
        self._seq[stream_id] = 0

    async def append(self, stream_id: str, event: dict) -> None:
        seq = self._seq.get(stream_id, 0) + 1
        self._seq[stream_id] = seq
        await self.db.execute(
            "INSERT INTO stream_events (stream_id, seq, event) VALUES (?, ?, ?)",
            (stream_id, seq, json.dumps(event)),
        )
        await self.db.commit()

    async def conclude(self, stream_id: str) -> None:
        await self.db.execute(
            "UPDATE stream_state SET concluded = 1 WHERE stream_id = ?", (stream_id,)
        )
        await self.db.commit()
        self._seq.pop(stream_id, None)

    async def is_live(self, stream_id: str) -> bool:
        cursor = await self.db.execute(
            "SELECT concluded FROM stream_state WHERE stream_id = ?", (stream_id,)
        )
        row = await cursor.fetchone()
        return row is not None and not row["concluded"]

    async def resume(self, stream_id: str) -> AsyncIterator[dict] | None:
        """Return a follower for a live stream, or None if it is unknown or concluded."""
        if not await self.is_live(stream_id):
            return None
        return self._follow(stream_id)

    async def _follow(self, stream_id: str) -> AsyncIterator[dict]:
        cursor_seq = 0
        idle = 0.0
        while True:
            cursor = await self.db.execute(
                "SELECT seq, event FROM stream_events WHERE stream_id = ? AND seq > ? ORDER BY seq",
                (stream_id, cursor_seq),
            )
            rows = await cursor.fetchall()
            for row in rows:
                cursor_seq = row["seq"]
                yield json.loads(row["event"])
            if rows:
                idle = 0.0
                continue
            if not await self.is_live(stream_id):
                return
            if idle >= self._idle_timeout:
                logger.warning("Stream %s went silent, stop following", stream_id)
                return
            await asyncio.sleep(self._poll_interval)
            idle += self._poll_interval


_backend: DisabledContinuations | SQLiteContinuations | None = None


async def initialize_stream_backend(path: str | None) -> DisabledContinuations | SQLiteContinuations:
    """Install the process-wide continuation backend. Later calls return the first one."""
    global _backend
    if _backend is not None:
        return _backend
    if not path:
        logger.info("Resumable streams are disabled (STREAM_STORE_PATH is not set)")
        _backend = DisabledContinuations()
        return _backend
    backend = SQLiteContinuations(path)
    await backend.initialize()
    logger.info("Resumable streams enabled at %s", path)
    _backend = backend
    return _backend


def get_stream_backend() -> DisabledContinuations | SQLiteContinuations:
    return _backend or DisabledContinuations()


async def shutdown_stream_backend() -> None:
    global _backend
    if _backend is not None:
        await _backend.close()
    _backend = None


async def _single(event: dict) -> AsyncIterator[dict]:
    yield event


class StreamResumer:
    """Reattach a client to the most recent generation of a chat."""

    def __init__(self, sqlite_store, continuations=None, replay_window_secs: float = RESUME_REPLAY_WINDOW_SECS) -> None:
        self._sqlite = sqlite_store
        self._continuations = continuations
        self._replay_window_secs = replay_window_secs

    @property
    def continuations(self):
        return self._continuations or get_stream_backend()

    async def resume(
        self, chat_id: str | None, session, requested_at: datetime | None = None
    ) -> AsyncIterator[dict] | None:
        """Return the events to send, or None for "no content"."""
        requested_at = requested_at or datetime.now(UTC)
        continuations = self.continuations
        if not continuations.enabled:
            return None

        if not chat_id:
            raise ChatError("bad_request:api")
        if session is None:
            raise ChatError("unauthorized:chat")

        chat = await self._sqlite.get_chat(chat_id)
        if chat is None:
            raise ChatError("not_found:chat")
        if chat["visibility"] == "private" and chat["user_id"] != session.user_id:
            raise ChatError("forbidden:chat")

        stream_ids = await self._sqlite.get_stream_ids(chat_id)
        if not stream_ids:
            raise ChatError("not_found:stream")
        recent_stream_id = stream_ids[-1]

        live = await continuations.resume(recent_stream_id)
        if live is not None:
            logger.info("Resuming live stream %s for chat %s", recent_stream_id, chat_id)
            return live

        messages = await self._sqlite.get_messages(chat_id)
        if not messages or messages[-1]["role"] != "assistant":
            return None
        last = messages[-1]
        age = (requested_at - datetime.fromisoformat(last["created_at"])).total_seconds()
        if age > self._replay_window_secs:
            return None
        logger.info("Replaying message %s for concluded stream %s", last["id"], recent_stream_id)
        return _single(sse_append_message(last))
