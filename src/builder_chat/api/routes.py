import json
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Query, Request, Response
from sse_starlette.sse import EventSourceResponse

from ..agent.models import PROVIDERS
from ..errors import ChatError
from .auth import OptionalSession, issue_session_token
from .models import ApiKeysRequest, ChatOut, MessageOut, VoteRequest

logger = logging.getLogger(__name__)
router = APIRouter()


def _require_session(session):
    if session is None:
        raise ChatError("unauthorized:chat")
    return session


@router.post("/api/chat")
async def chat_endpoint(request: Request, session: OptionalSession):
    executor = request.app.state.turn_executor
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise ChatError("bad_request:api") from exc

    turn = await executor.start(payload, session)
    return EventSourceResponse(turn.events(), ping=15)


@router.get("/api/chat/stream")
async def resume_stream(request: Request, session: OptionalSession, chat_id: str | None = None):
    resumer = request.app.state.stream_resumer
    events = await resumer.resume(chat_id, session)
    if events is None:
        return Response(status_code=204)
    return EventSourceResponse(events, ping=15)


@router.delete("/api/chat")
async def delete_chat(
    request: Request,
    session: OptionalSession,
    chat_id: Annotated[str | None, Query(alias="id")] = None,
) -> ChatOut:
    sqlite = request.app.state.sqlite_store
    if not chat_id:
        raise ChatError("bad_request:api")
    session = _require_session(session)

    chat = await sqlite.get_chat(chat_id)
    if chat is None:
        raise ChatError("not_found:chat")
    if chat["user_id"] != session.user_id:
        raise ChatError("forbidden:chat")

    deleted = await sqlite.delete_chat(chat_id)
    if deleted is None:
        raise ChatError("not_found:chat")
    logger.info("Deleted chat %s", chat_id)
    return ChatOut(**deleted)


@router.get("/api/history")
async def list_history(request: Request, session: OptionalSession, limit: int = 50) -> list[ChatOut]:
    sqlite = request.app.state.sqlite_store
    session = _require_session(session)
    chats = await sqlite.list_chats(session.user_id, limit=min(max(limit, 1), 100))
    return [ChatOut(**c) for c in chats]


@router.get("/api/chat/{chat_id}/messages")
async def get_chat_messages(chat_id: str, request: Request, session: OptionalSession) -> list[MessageOut]:
    sqlite = request.app.state.sqlite_store
    chat = await sqlite.get_chat(chat_id)
    if chat is None:
        raise ChatError("not_found:chat")
    if chat["visibility"] == "private":
        session = _require_session(session)
        if chat["user_id"] != session.user_id:
            raise ChatError("forbidden:chat")
    messages = await sqlite.get_messages(chat_id)
    return [MessageOut(**m) for m in messages]


@router.get("/api/vote")
async def list_votes(request: Request, session: OptionalSession, chat_id: str | None = None):
    sqlite = request.app.state.sqlite_store
    if not chat_id:
        raise ChatError("bad_request:api")
    session = _require_session(session)

    chat = await sqlite.get_chat(chat_id)
    if chat is None:
        raise ChatError("not_found:chat")
    if chat["user_id"] != session.user_id:
        raise ChatError("forbidden:vote")
    return await sqlite.get_votes(chat_id)


@router.patch("/api/vote")
async def vote_message(req: VoteRequest, request: Request, session: OptionalSession):
    sqlite = request.app.state.sqlite_store
    session = _require_session(session)
    chat_id = str(req.chat_id)
    message_id = str(req.message_id)

    chat = await sqlite.get_chat(chat_id)
    if chat is None:
        raise ChatError("not_found:chat")
    if chat["user_id"] != session.user_id:
        raise ChatError("forbidden:chat")
    message = await sqlite.get_message(message_id)
    if message is None or message["chat_id"] != chat_id:
        raise ChatError("not_found:vote")

    await sqlite.vote_message(chat_id, message_id, req.type == "up")
    return {"chat_id": chat_id, "message_id": message_id, "is_upvoted": req.type == "up"}


@router.get("/api/user/api-keys")
async def get_api_keys(request: Request, session: OptionalSession):
    credentials = request.app.state.credential_store
    session = _require_session(session)
    stored = set(await credentials.list_providers(session.user_id))
    return {provider: provider in stored for provider in PROVIDERS}


@router.post("/api/user/api-keys")
async def save_api_keys(req: ApiKeysRequest, request: Request, session: OptionalSession):
    credentials = request.app.state.credential_store
    session = _require_session(session)
    unknown = set(req.keys) - set(PROVIDERS)
    if unknown:
        raise ChatError("bad_request:api", cause=f"Unknown providers: {', '.join(sorted(unknown))}")
    for provider, api_key in req.keys.items():
        await credentials.save_api_key(session.user_id, provider, api_key)
    logger.info("Stored API keys for user %s: %s", session.user_id, ", ".join(sorted(req.keys)))
    return {provider: True for provider in req.keys}


@router.delete("/api/user/api-keys")
async def delete_api_key(request: Request, session: OptionalSession, provider: str | None = None):
    credentials = request.app.state.credential_store
    session = _require_session(session)
    if provider not in PROVIDERS:
        raise ChatError("bad_request:api")
    await credentials.delete_api_key(session.user_id, provider)
    return {provider: False}


@router.post("/api/auth/guest")
async def guest_sign_in(request: Request, session: OptionalSession):
    """Create a guest user and hand back a session token for it."""
    if session is not None:
        return {"user_id": session.user_id, "type": session.user_type, "token": None}
    sqlite = request.app.state.sqlite_store
    user = await sqlite.create_user(f"guest-{uuid.uuid4().hex[:12]}", "guest")
    logger.info("Created guest user %s", user["id"])
    return {
        "user_id": user["id"],
        "type": user["type"],
        "token": issue_session_token(user["id"], user["type"]),
    }
