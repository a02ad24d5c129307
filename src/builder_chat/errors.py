"""
Typed chat errors and their HTTP rendering.

Every pre-stream failure is raised as a ``ChatError`` carrying a
``<type>:<surface>`` code (for example ``rate_limit:chat``). The FastAPI
handlers installed by ``install_error_handlers`` turn it into a JSON body with
a stable code and message.
"""

import logging
from enum import StrEnum

import aiosqlite
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorType(StrEnum):
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    OFFLINE = "offline"


STATUS_CODES: dict[ErrorType, int] = {
    ErrorType.BAD_REQUEST: 400,
    ErrorType.UNAUTHORIZED: 401,
    ErrorType.FORBIDDEN: 403,
    ErrorType.NOT_FOUND: 404,
    ErrorType.RATE_LIMIT: 429,
    ErrorType.OFFLINE: 503,
}

MESSAGES: dict[str, str] = {
    "bad_request:api": "The request couldn't be processed. Please check your input and try again.",
    "bad_request:database": "The request conflicts with stored data.",
    "unauthorized:chat": "You need to sign in to continue this chat.",
    "forbidden:chat": "This chat belongs to another user.",
    "not_found:chat": "The requested chat was not found.",
    "not_found:stream": "There is no stream to resume for this chat.",
    "not_found:vote": "The message to vote on was not found in this chat.",
    "rate_limit:chat": "You have exceeded your maximum number of messages for the day. Please try again later.",
    "offline:chat": "We're having trouble sending your message. Please try again shortly.",
    "offline:database": "The message store is unavailable. Please try again shortly.",
}

DEFAULT_MESSAGES: dict[ErrorType, str] = {
    ErrorType.BAD_REQUEST: "The request couldn't be processed.",
    ErrorType.UNAUTHORIZED: "You need to sign in first.",
    ErrorType.FORBIDDEN: "You don't have access to this resource.",
    ErrorType.NOT_FOUND: "The requested resource was not found.",
    ErrorType.RATE_LIMIT: "Too many requests. Please try again later.",
    ErrorType.OFFLINE: "A backing service is unavailable.",
}


class ChatError(Exception):
    """A typed, user-facing failure identified by ``<type>:<surface>``."""

    def __init__(self, code: str, cause: str | None = None) -> None:
        type_name, _, surface = code.partition(":")
        self.type = ErrorType(type_name)
        self.surface = surface or "api"
        self.cause = cause
        self.message = MESSAGES.get(self.code, DEFAULT_MESSAGES[self.type])
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return f"{self.type}:{self.surface}"

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.type]

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "cause": self.cause}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        logger.info("%s %s -> %s", request.method, request.url.path, exc.code)
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return ChatError("bad_request:api", cause=str(exc.errors()[:1])).to_response()

    @app.exception_handler(aiosqlite.Error)
    async def store_error_handler(request: Request, exc: aiosqlite.Error) -> JSONResponse:
        if isinstance(exc, aiosqlite.IntegrityError):
            return ChatError("bad_request:database", cause=str(exc)).to_response()
        logger.exception("Store error on %s %s", request.method, request.url.path)
        return ChatError("offline:database").to_response()
