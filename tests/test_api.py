import uuid

import httpx
import pytest
import pytest_asyncio

from builder_chat.api.auth import issue_session_token
from builder_chat.chat.messages import text_part
from builder_chat.chat.streams import DisabledContinuations, StreamResumer
from builder_chat.main import app


def auth(session) -> dict:
    return {"Authorization": f"Bearer {issue_session_token(session.user_id, session.user_type)}"}


@pytest_asyncio.fixture
async def client(sqlite_store, credential_store, make_executor):
    app.state.sqlite_store = sqlite_store
    app.state.credential_store = credential_store
    app.state.turn_executor = make_executor()
    app.state.stream_resumer = StreamResumer(sqlite_store, DisabledContinuations())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_chat_rejects_malformed_body(client, user):
    resp = await client.post(
        "/api/chat", content=b"{not json", headers={**auth(user), "Content-Type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "bad_request:api"


@pytest.mark.asyncio
async def test_chat_validates_before_auth(client, make_payload):
    payload = make_payload()
    payload["message"]["parts"][0]["text"] = "x" * 2001

    resp = await client.post("/api/chat", json=payload)
    assert resp.status_code == 400

    resp = await client.post("/api/chat", json=make_payload())
    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthorized:chat"


@pytest.mark.asyncio
async def test_invalid_token_is_anonymous(client, make_payload):
    resp = await client.post(
        "/api/chat", json=make_payload(), headers={"Authorization": "Bearer not-a-token"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_chat_rate_limited(client, sqlite_store, make_payload):
    row = await sqlite_store.create_user("guest@example.com", "guest")
    chat_id = str(uuid.uuid4())
    await sqlite_store.create_chat(chat_id, row["id"])
    for i in range(20):
        await sqlite_store.add_message(chat_id, "user", [text_part(f"{i}")])

    token = issue_session_token(row["id"], "guest")
    resp = await client.post(
        "/api/chat", json=make_payload(), headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 429
    assert resp.json()["code"] == "rate_limit:chat"


@pytest.mark.asyncio
async def test_resume_without_backend_is_no_content(client):
    resp = await client.get("/api/chat/stream", params={"chat_id": str(uuid.uuid4())})
    assert resp.status_code == 204


@pytest.mark.asyncio
async def test_delete_chat_flow(client, sqlite_store, user, other_user):
    chat_id = str(uuid.uuid4())
    await sqlite_store.create_chat(chat_id, user.user_id, "Mine")
    await sqlite_store.add_message(chat_id, "user", [text_part("hello")])

    resp = await client.delete("/api/chat", headers=auth(user))
    assert resp.status_code == 400

    resp = await client.delete("/api/chat", params={"id": chat_id})
    assert resp.status_code == 401

    resp = await client.delete("/api/chat", params={"id": chat_id}, headers=auth(other_user))
    assert resp.status_code == 403
    assert await sqlite_store.get_chat(chat_id) is not None

    resp = await client.delete("/api/chat", params={"id": chat_id}, headers=auth(user))
    assert resp.status_code == 200
    assert resp.json()["id"] == chat_id
    assert resp.json()["title"] == "Mine"
    assert await sqlite_store.get_messages(chat_id) == []

    resp = await client.delete("/api/chat", params={"id": chat_id}, headers=auth(user))
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found:chat"


@pytest.mark.asyncio
async def test_history_and_messages(client, sqlite_store, user, other_user):
    chat_id = str(uuid.uuid4())
    await sqlite_store.create_chat(chat_id, user.user_id, "Mine")
    await sqlite_store.add_message(chat_id, "user", [text_part("hello")])
    await sqlite_store.create_chat(str(uuid.uuid4()), other_user.user_id, "Theirs")

    resp = await client.get("/api/history", headers=auth(user))
    assert resp.status_code == 200
    assert [c["title"] for c in resp.json()] == ["Mine"]

    resp = await client.get(f"/api/chat/{chat_id}/messages", headers=auth(user))
    assert resp.status_code == 200
    assert resp.json()[0]["parts"] == [{"type": "text", "text": "hello"}]

    resp = await client.get(f"/api/chat/{chat_id}/messages", headers=auth(other_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_vote(client, sqlite_store, user):
    chat_id = str(uuid.uuid4())
    await sqlite_store.create_chat(chat_id, user.user_id)
    msg = await sqlite_store.add_message(chat_id, "assistant", [text_part("hi")], message_id=str(uuid.uuid4()))

    body = {"chat_id": chat_id, "message_id": msg["id"], "type": "down"}
    resp = await client.patch("/api/vote", json=body, headers=auth(user))
    assert resp.status_code == 200
    assert await sqlite_store.get_votes(chat_id) == [
        {"chat_id": chat_id, "message_id": msg["id"], "is_upvoted": False}
    ]

    body["message_id"] = str(uuid.uuid4())
    resp = await client.patch("/api/vote", json=body, headers=auth(user))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_api_keys(client, credential_store, user):
    resp = await client.get("/api/user/api-keys", headers=auth(user))
    assert resp.json() == {"anthropic": False}

    resp = await client.post("/api/user/api-keys", json={"keys": {"anthropic": "sk-ant-1"}}, headers=auth(user))
    assert resp.status_code == 200
    assert await credential_store.get_api_key(user.user_id, "anthropic") == "sk-ant-1"

    resp = await client.post("/api/user/api-keys", json={"keys": {"openai": "sk-1"}}, headers=auth(user))
    assert resp.status_code == 400

    resp = await client.delete("/api/user/api-keys", params={"provider": "anthropic"}, headers=auth(user))
    assert resp.json() == {"anthropic": False}
    assert await credential_store.list_providers(user.user_id) == []


@pytest.mark.asyncio
async def test_list_votes(client, sqlite_store, user, other_user):
    chat_id = str(uuid.uuid4())
    await sqlite_store.create_chat(chat_id, user.user_id)
    msg = await sqlite_store.add_message(chat_id, "assistant", [text_part("hi")])
    await sqlite_store.vote_message(chat_id, msg["id"], True)

    resp = await client.get("/api/vote", params={"chat_id": chat_id}, headers=auth(user))
    assert resp.status_code == 200
    assert resp.json() == [{"chat_id": chat_id, "message_id": msg["id"], "is_upvoted": True}]

    resp = await client.get("/api/vote", params={"chat_id": chat_id}, headers=auth(other_user))
    assert resp.status_code == 403

    resp = await client.get("/api/vote", headers=auth(user))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_guest_sign_in_issues_a_usable_token(client):
    resp = await client.post("/api/auth/guest")
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "guest"

    headers = {"Authorization": f"Bearer {body['token']}"}
    resp = await client.get("/api/history", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == []

    resp = await client.post("/api/auth/guest", headers=headers)
    assert resp.json()["user_id"] == body["user_id"]
    assert resp.json()["token"] is None
