import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum

import aiosqlite
from pydantic import ValidationError

from ..agent.client import build_prompt
from ..agent.entitlements import check_entitlement
from ..agent.prompts import build_system_prompt
from ..agent.providers import ModelHandle
from ..agent.tools import ToolContext, build_tool_table
from ..api.models import ChatRequest
from ..api.sse import sse_done, sse_error, sse_event
from ..config import MAX_TURN_DURATION_SECS, SHUTDOWN_GRACE_SECS, STREAM_CHANNEL_SIZE
from ..errors import ChatError
from .context import ContextExtractor
from .messages import get_trailing_message_id, merge_response_parts
from .streams import get_stream_backend

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"


class TurnState(StrEnum):
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    LOADING_HISTORY = "loading_history"
    RESOLVING = "resolving"
    GENERATING = "generating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


_CLOSED = object()


class EventChannel:
    """Bounded queue between the pump task and one client connection.

    Sends never wait on the reader. A client that falls a full queue behind
    is cut off: the backlog is dropped and its stream ends, leaving the
    continuation log to catch it up. Once detached, sends are no-ops.
    """

    def __init__(self, maxsize: int = STREAM_CHANNEL_SIZE) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(maxsize, 1))
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def send(self, event: dict) -> None:
        if self._detached:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Client fell %d events behind, ending its stream", self._queue.maxsize)
            self.detach()
            self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        if self._detached:
            return
        if self._queue.full():
            # Make room for the end marker
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        self._detached = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    async def __aiter__(self) -> AsyncIterator[dict]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


@dataclass
class Turn:
    channel: EventChannel
    state: TurnState = TurnState.VALIDATING
    chat_id: str | None = None
    stream_id: str | None = None
    user_message: dict | None = None
    handle: ModelHandle | None = None
    assistant_message_id: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    async def events(self) -> AsyncIterator[dict]:
        """Events for the connected client. Leaving early detaches without stopping the turn."""
        try:
            async for event in self.channel:
                yield event
        finally:
            self.channel.detach()


def title_from_message(text: str) -> str:
    title = text.strip()[:80]
    if len(title) >= 80:
        title = title[:77] + "..."
    return title or DEFAULT_TITLE


class TurnExecutor:
    """Drives one chat turn from request validation to the persisted reply."""

    def __init__(
        self,
        sqlite_store,
        resolver,
        backend,
        continuations=None,
        max_duration_secs: float = MAX_TURN_DURATION_SECS,
        channel_size: int = STREAM_CHANNEL_SIZE,
    ) -> None:
        self._sqlite = sqlite_store
        self._resolver = resolver
        self._backend = backend
        self._continuations = continuations
        self._max_duration_secs = max_duration_secs
        self._channel_size = channel_size
        self._extractor = ContextExtractor(sqlite_store)
        self._tasks: set[asyncio.Task] = set()

    @property
    def continuations(self):
        return self._continuations or get_stream_backend()

    async def start(self, payload: dict, session) -> Turn:
        """Run every pre-stream state and launch generation.

        Raises ``ChatError`` for validation, auth, ownership and quota
        failures; nothing is written before those checks pass.
        """
        turn = Turn(channel=EventChannel(self._channel_size))
        try:
            request = self._validate(turn, payload)
            chat = await self._authorize(turn, request, session)
            messages = await self._load_history(turn, request, session, chat)
            prompt, system_prompt, tools = await self._resolve(turn, request, session, messages)
        except ChatError as exc:
            turn.state = TurnState.FAILED
            logger.info("Turn rejected: %s", exc.code)
            raise

        turn.state = TurnState.GENERATING
        task = asyncio.create_task(self._run(turn, prompt, system_prompt, tools))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        turn.task = task
        return turn

    def _validate(self, turn: Turn, payload) -> ChatRequest:
        turn.state = TurnState.VALIDATING
        try:
            return ChatRequest.model_validate(payload)
        except ValidationError as exc:
            raise ChatError("bad_request:api", cause=str(exc.errors()[:1])) from exc

    async def _authorize(self, turn: Turn, request: ChatRequest, session) -> dict | None:
        turn.state = TurnState.AUTHORIZING
        if session is None:
            raise ChatError("unauthorized:chat")
        await check_entitlement(self._sqlite, session.user_id, session.user_type)

        chat = await self._sqlite.get_chat(str(request.chat_id))
        if chat is not None and chat["user_id"] != session.user_id:
            raise ChatError("forbidden:chat")
        return chat

    async def _load_history(self, turn: Turn, request: ChatRequest, session, chat) -> list[dict]:
        turn.state = TurnState.LOADING_HISTORY
        chat_id = str(request.chat_id)
        turn.chat_id = chat_id
        if chat is None:
            await self._sqlite.create_chat(
                chat_id,
                session.user_id,
                title=title_from_message(request.message.text),
                visibility=request.visibility,
            )

        previous = await self._sqlite.get_messages(chat_id)
        # The user message is durable before generation starts
        turn.user_message = await self._sqlite.add_message(
            chat_id,
            "user",
            [p.model_dump() for p in request.message.parts],
            attachments=[a.model_dump() for a in request.message.attachments],
            message_id=str(request.message.id),
        )
        return previous + [turn.user_message]

    async def _resolve(self, turn: Turn, request: ChatRequest, session, messages: list[dict]):
        turn.state = TurnState.RESOLVING
        turn.handle = await self._resolver.resolve(request.selected_model, session.user_id)

        ctx = ToolContext(chat_id=turn.chat_id, user_id=session.user_id, sqlite_store=self._sqlite)
        tools = build_tool_table(turn.handle, ctx)
        if tools:
            found = await self._extractor.extract(messages, session.user_id)
            if found is not None:
                ctx.document_id = found.document_id
                ctx.document_content = found.content
        system_prompt = build_system_prompt(bool(tools), ctx.document_id, ctx.document_content)

        turn.stream_id = str(uuid.uuid4())
        await self._sqlite.create_stream_id(turn.stream_id, turn.chat_id)
        try:
            await self.continuations.create(turn.stream_id)
        except aiosqlite.Error:
            logger.warning("Could not register stream %s for resumption", turn.stream_id, exc_info=True)
        return build_prompt(messages), system_prompt, tools

    async def _run(self, turn: Turn, prompt: str, system_prompt: str, tools) -> None:
        """Drain the model stream to the end whether or not a client is listening."""
        entries: list[dict] = []
        try:
            async with asyncio.timeout(self._max_duration_secs):
                stream = self._backend.stream(turn.handle, prompt, system_prompt, tools)
                async with aclosing(stream) as events:
                    async for event in events:
                        if event.type == "response":
                            entries = event.data.get("messages", [])
                        else:
                            await self._emit(turn, sse_event(event.type, event.data))

            turn.state = TurnState.PERSISTING
            await self._persist(turn, entries)
            turn.state = TurnState.DONE
            await self._emit(
                turn,
                sse_done(
                    {
                        "chat_id": turn.chat_id,
                        "stream_id": turn.stream_id,
                        "message_id": turn.assistant_message_id,
                    }
                ),
            )
        except TimeoutError:
            turn.state = TurnState.FAILED
            logger.error("Turn on chat %s exceeded %ss", turn.chat_id, self._max_duration_secs)
            await self._emit(turn, sse_error("The response took too long and was stopped."))
        except Exception:
            turn.state = TurnState.FAILED
            logger.exception("Error in turn for chat %s", turn.chat_id)
            await self._emit(turn, sse_error("Oops, an error occurred!"))
        finally:
            await self._conclude(turn)

    async def _persist(self, turn: Turn, entries: list[dict]) -> None:
        assistant_id = get_trailing_message_id(entries)
        if not assistant_id:
            logger.error("No assistant message found for chat %s", turn.chat_id)
            return
        try:
            await self._sqlite.add_message(
                turn.chat_id,
                "assistant",
                merge_response_parts(entries),
                message_id=assistant_id,
            )
        except aiosqlite.Error:
            # At-most-once: the reply was already streamed, so the write is not retried
            logger.exception("Failed to save assistant message for chat %s", turn.chat_id)
            return
        turn.assistant_message_id = assistant_id

    async def _emit(self, turn: Turn, event: dict) -> None:
        continuations = self.continuations
        if continuations.enabled:
            try:
                await continuations.append(turn.stream_id, event)
            except aiosqlite.Error:
                logger.warning("Failed to record event for stream %s", turn.stream_id, exc_info=True)
        turn.channel.send(event)

    async def _conclude(self, turn: Turn) -> None:
        try:
            await self.continuations.conclude(turn.stream_id)
        except aiosqlite.Error:
            logger.warning("Failed to conclude stream %s", turn.stream_id, exc_info=True)
        turn.channel.close()

    async def close(self) -> None:
        """Give in-flight turns a bounded chance to finish, then cancel the rest."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight turns", len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=SHUTDOWN_GRACE_SECS)
        for task in pending:
            task.cancel()
