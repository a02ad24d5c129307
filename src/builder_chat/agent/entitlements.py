import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from ..config import ENTITLEMENT_WINDOW_HOURS
from ..errors import ChatError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlements:
    max_messages_per_day: int


ENTITLEMENTS_BY_USER_TYPE: dict[str, Entitlements] = {
    # Users without an account
    "guest": Entitlements(max_messages_per_day=20),
    # Users with an account
    "regular": Entitlements(max_messages_per_day=1000),
}


def entitlements_for(user_type: str) -> Entitlements:
    return ENTITLEMENTS_BY_USER_TYPE.get(user_type, ENTITLEMENTS_BY_USER_TYPE["guest"])


async def check_entitlement(
    sqlite_store,
    user_id: str,
    user_type: str,
    now: datetime | None = None,
    window_hours: int = ENTITLEMENT_WINDOW_HOURS,
) -> int:
    """Raise ``rate_limit:chat`` once the user has spent their daily quota.

    The count is recomputed from persisted message timestamps on every call,
    so two requests racing at the boundary can both pass.
    """
    now = now or datetime.now(UTC)
    since = (now - timedelta(hours=window_hours)).isoformat(timespec="microseconds")
    count = await sqlite_store.count_user_messages(user_id, since)
    quota = entitlements_for(user_type).max_messages_per_day
    if count >= quota:
        logger.info("User %s hit quota (%d/%d)", user_id, count, quota)
        raise ChatError("rate_limit:chat")
    return count
