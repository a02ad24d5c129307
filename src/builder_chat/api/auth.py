import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ..config import AUTH_SECRET

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Session:
    user_id: str
    user_type: str = "regular"


def issue_session_token(
    user_id: str,
    user_type: str = "regular",
    expires_in: timedelta = timedelta(days=30),
    secret: str = AUTH_SECRET,
) -> str:
    payload = {"sub": user_id, "type": user_type, "exp": datetime.now(UTC) + expires_in}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_session_token(token: str, secret: str = AUTH_SECRET) -> Session | None:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError:
        logger.info("Rejected session token")
        return None
    if not payload.get("sub"):
        return None
    return Session(user_id=payload["sub"], user_type=payload.get("type", "regular"))


async def get_session(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Session | None:
    """Resolve the bearer token to a session; anonymous requests get None."""
    if credentials is None:
        return None
    return decode_session_token(credentials.credentials)


OptionalSession = Annotated[Session | None, Depends(get_session)]
