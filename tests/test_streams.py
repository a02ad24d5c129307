import asyncio
import json
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from builder_chat.chat import streams
from builder_chat.chat.messages import text_part
from builder_chat.chat.streams import (
    DisabledContinuations,
    SQLiteContinuations,
    StreamResumer,
    get_stream_backend,
    initialize_stream_backend,
    shutdown_stream_backend,
)
from builder_chat.errors import ChatError


async def make_chat(sqlite_store, owner, visibility: str = "private", with_stream: bool = True):
    chat_id = str(uuid.uuid4())
    await sqlite_store.create_chat(chat_id, owner.user_id, visibility=visibility)
    stream_id = None
    if with_stream:
        stream_id = str(uuid.uuid4())
        await sqlite_store.create_stream_id(stream_id, chat_id)
    return chat_id, stream_id


async def drain(events) -> list[dict]:
    return [e async for e in events]


@pytest.fixture
def resumer(sqlite_store, continuations):
    return StreamResumer(sqlite_store, continuations)


@pytest.mark.asyncio
async def test_disabled_backend_has_no_content(sqlite_store, user):
    resumer = StreamResumer(sqlite_store, DisabledContinuations())
    # Checked before anything else, even a missing session
    assert await resumer.resume(None, None) is None


@pytest.mark.asyncio
async def test_resume_requires_chat_id_and_session(resumer, user):
    with pytest.raises(ChatError) as exc_info:
        await resumer.resume(None, user)
    assert exc_info.value.code == "bad_request:api"

    with pytest.raises(ChatError) as exc_info:
        await resumer.resume(str(uuid.uuid4()), None)
    assert exc_info.value.code == "unauthorized:chat"


@pytest.mark.asyncio
async def test_resume_unknown_chat(resumer, user):
    with pytest.raises(ChatError) as exc_info:
        await resumer.resume(str(uuid.uuid4()), user)
    assert exc_info.value.code == "not_found:chat"


@pytest.mark.asyncio
async def test_private_chat_of_another_user_is_forbidden(sqlite_store, resumer, user, other_user):
    chat_id, _ = await make_chat(sqlite_store, other_user)
    with pytest.raises(ChatError) as exc_info:
        await resumer.resume(chat_id, user)
    assert exc_info.value.code == "forbidden:chat"


@pytest.mark.asyncio
async def test_public_chat_of_another_user_can_be_resumed(sqlite_store, resumer, user, other_user):
    chat_id, _ = await make_chat(sqlite_store, other_user, visibility="public")
    await sqlite_store.add_message(chat_id, "user", [text_part("hi")])
    assert await resumer.resume(chat_id, user) is None


@pytest.mark.asyncio
async def test_chat_without_streams(sqlite_store, resumer, user):
    chat_id, _ = await make_chat(sqlite_store, user, with_stream=False)
    with pytest.raises(ChatError) as exc_info:
        await resumer.resume(chat_id, user)
    assert exc_info.value.code == "not_found:stream"


@pytest.mark.asyncio
async def test_concluded_stream_replays_fresh_assistant_message(sqlite_store, continuations, resumer, user):
    chat_id, stream_id = await make_chat(sqlite_store, user)
    await continuations.create(stream_id)
    await continuations.conclude(stream_id)
    await sqlite_store.add_message(chat_id, "user", [text_part("hi")])
    reply = await sqlite_store.add_message(chat_id, "assistant", [text_part("hello")])

    events = await drain(await resumer.resume(chat_id, user))

    assert [e["event"] for e in events] == ["append_message"]
    assert json.loads(events[0]["data"])["message"]["id"] == reply["id"]


@pytest.mark.asyncio
async def test_concluded_stream_with_stale_message(sqlite_store, continuations, resumer, user):
    chat_id, stream_id = await make_chat(sqlite_store, user)
    await continuations.create(stream_id)
    await continuations.conclude(stream_id)
    await sqlite_store.add_message(chat_id, "assistant", [text_part("hello")])

    later = datetime.now(UTC) + timedelta(seconds=20)
    assert await resumer.resume(chat_id, user, requested_at=later) is None


@pytest.mark.asyncio
async def test_concluded_stream_ending_with_user_message(sqlite_store, continuations, resumer, user):
    chat_id, stream_id = await make_chat(sqlite_store, user)
    await continuations.create(stream_id)
    await continuations.conclude(stream_id)
    await sqlite_store.add_message(chat_id, "user", [text_part("are you there?")])

    assert await resumer.resume(chat_id, user) is None


@pytest.mark.asyncio
async def test_live_stream_is_followed_to_the_end(sqlite_store, continuations, resumer, user):
    chat_id, stream_id = await make_chat(sqlite_store, user)
    await continuations.create(stream_id)
    await continuations.append(stream_id, {"event": "token", "data": "1"})

    follower = await resumer.resume(chat_id, user)
    assert follower is not None

    async def finish():
        await asyncio.sleep(0.05)
        await continuations.append(stream_id, {"event": "token", "data": "2"})
        await continuations.append(stream_id, {"event": "done", "data": "{}"})
        await continuations.conclude(stream_id)

    producer = asyncio.create_task(finish())
    events = await asyncio.wait_for(drain(follower), timeout=5)
    await producer

    assert [e["data"] for e in events] == ["1", "2", "{}"]


@pytest.mark.asyncio
async def test_silent_stream_stops_following(tmp_path):
    backend = SQLiteContinuations(str(tmp_path / "idle.db"), poll_interval=0.01, idle_timeout=0.05)
    await backend.initialize()
    try:
        await backend.create("s1")
        events = await asyncio.wait_for(drain(await backend.resume("s1")), timeout=5)
        assert events == []
        assert await backend.resume("unknown") is None
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_backend_is_initialized_once(tmp_path):
    await shutdown_stream_backend()
    try:
        assert get_stream_backend().enabled is False

        first = await initialize_stream_backend(str(tmp_path / "one.db"))
        second = await initialize_stream_backend(str(tmp_path / "two.db"))
        assert first is second
        assert get_stream_backend() is first
        assert first.enabled is True
    finally:
        await shutdown_stream_backend()
    assert streams._backend is None


@pytest.mark.asyncio
async def test_unconfigured_backend_is_disabled():
    await shutdown_stream_backend()
    try:
        backend = await initialize_stream_backend(None)
        assert backend.enabled is False
    finally:
        await shutdown_stream_backend()
