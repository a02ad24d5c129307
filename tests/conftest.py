import asyncio
import uuid

import pytest
import pytest_asyncio

from builder_chat.agent.client import ChatEvent
from builder_chat.agent.providers import ModelResolver
from builder_chat.api.auth import Session
from builder_chat.chat.executor import TurnExecutor
from builder_chat.chat.messages import text_part
from builder_chat.chat.streams import DisabledContinuations, SQLiteContinuations
from builder_chat.data.credentials import ApiKeyCipher, CredentialStore
from builder_chat.data.sqlite_store import SQLiteStore

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


def reply_events(text: str = "Hello there", message_id: str | None = None) -> list[ChatEvent]:
    message_id = message_id or str(uuid.uuid4())
    return [
        ChatEvent(type="token", data={"text": text}),
        ChatEvent(
            type="response",
            data={"messages": [{"id": message_id, "role": "assistant", "parts": [text_part(text)]}]},
        ),
    ]


class FakeBackend:
    """Scripted stand-in for the model backend."""

    def __init__(self, events=None, delay: float = 0.0, error: Exception | None = None) -> None:
        self.events = reply_events() if events is None else events
        self.delay = delay
        self.error = error
        self.calls: list[dict] = []

    async def stream(self, handle, prompt, system_prompt, tools):
        self.calls.append(
            {"handle": handle, "prompt": prompt, "system_prompt": system_prompt, "tools": tools}
        )
        for event in self.events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
        if self.error is not None:
            raise self.error


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def continuations(tmp_path):
    backend = SQLiteContinuations(str(tmp_path / "streams.db"), poll_interval=0.01, idle_timeout=1.0)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def cipher():
    return ApiKeyCipher("test-secret")


@pytest.fixture
def credential_store(sqlite_store, cipher):
    return CredentialStore(sqlite_store, cipher)


@pytest.fixture
def resolver(credential_store):
    return ModelResolver(credential_store, default_model=DEFAULT_MODEL, environ={})


@pytest_asyncio.fixture
async def user(sqlite_store):
    row = await sqlite_store.create_user("owner@example.com", "regular")
    return Session(user_id=row["id"], user_type="regular")


@pytest_asyncio.fixture
async def other_user(sqlite_store):
    row = await sqlite_store.create_user("other@example.com", "regular")
    return Session(user_id=row["id"], user_type="regular")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_executor(sqlite_store, resolver):
    def _make(backend=None, continuations=None, **kwargs) -> TurnExecutor:
        return TurnExecutor(
            sqlite_store,
            resolver,
            backend or FakeBackend(),
            continuations or DisabledContinuations(),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_payload():
    def _make(
        chat_id: str | None = None,
        text: str = "Build me an agent that tracks invoices",
        model: str = DEFAULT_MODEL,
        visibility: str = "private",
    ) -> dict:
        return {
            "chat_id": chat_id or str(uuid.uuid4()),
            "message": {
                "id": str(uuid.uuid4()),
                "role": "user",
                "parts": [{"type": "text", "text": text}],
            },
            "selected_model": model,
            "visibility": visibility,
        }

    return _make


async def collect(turn) -> list[dict]:
    return [event async for event in turn.events()]
