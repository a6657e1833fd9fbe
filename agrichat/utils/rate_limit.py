"""Per-user limits on chat actions, shared by the WebSocket and REST paths."""
import logging
from typing import Dict, Optional

from limits import RateLimitItem, parse
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from agrichat.core.config import settings


logger = logging.getLogger("agrichat.rate_limit")

SEND = "send"
CREATE_CONVERSATION = "create_conversation"


class ChatRateLimiter:
    """Moving-window limits keyed by (action, user id).

    An action configured with an empty rate is not limited. The storage
    defaults to process memory; point ``RATE_LIMIT_STORAGE_URI`` at a shared
    ``async+`` backend to limit across processes.
    """

    def __init__(
        self,
        send_rate: Optional[str] = None,
        create_rate: Optional[str] = None,
        storage_uri: Optional[str] = None,
    ) -> None:
        rates = {
            SEND: settings.SEND_RATE_LIMIT if send_rate is None else send_rate,
            CREATE_CONVERSATION: settings.CONVERSATION_RATE_LIMIT if create_rate is None else create_rate,
        }
        self._items: Dict[str, RateLimitItem] = {action: parse(rate) for action, rate in rates.items() if rate}
        self._limiter = MovingWindowRateLimiter(storage_from_string(storage_uri or settings.RATE_LIMIT_STORAGE_URI))

    async def hit(self, action: str, user_id: str) -> bool:
        """Count one attempt; False when the user is over the limit."""
        item = self._items.get(action)
        if item is None:
            return True
        allowed = await self._limiter.hit(item, action, user_id)
        if not allowed:
            logger.info("Rate limit reached for %s", action, extra={"user_id": user_id, "event": action})
        return allowed
