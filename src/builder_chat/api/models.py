from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


class TextPart(BaseModel):
    type: Literal["text"]
    text: str = Field(min_length=1, max_length=2000)


class Attachment(BaseModel):
    url: str
    name: str = Field(min_length=1, max_length=2000)
    content_type: Literal["image/png", "image/jpeg"]


class UserMessage(BaseModel):
    id: UUID
    role: Literal["user"] = "user"
    parts: list[TextPart] = Field(min_length=1)
    attachments: list[Attachment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts)


class ChatRequest(BaseModel):
    chat_id: UUID
    message: UserMessage
    selected_model: str
    visibility: Literal["public", "private"] = "private"


class VoteRequest(BaseModel):
    chat_id: UUID
    message_id: UUID
    type: Literal["up", "down"]


class ApiKeysRequest(BaseModel):
    keys: dict[str, str] = Field(min_length=1)


class ChatOut(BaseModel):
    id: str
    user_id: str
    title: str
    visibility: str
    created_at: str


class MessageOut(BaseModel):
    id: str
    chat_id: str
    role: str
    parts: list[dict]
    attachments: list[dict]
    created_at: str
