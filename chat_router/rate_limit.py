"""Per-user chat throttling."""

import logging

from limits import RateLimitItemPerMinute
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from chat_router.config import Config
from chat_router.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

NAMESPACE = "chat"


class UserRateLimiter:
    """Moving-window limit of chat requests per authenticated user."""

    def __init__(self, config: Config):
        self._item = RateLimitItemPerMinute(
            config.user_rate_limit, config.user_rate_window_minutes
        )
        self._limiter = MovingWindowRateLimiter(MemoryStorage())

    def check(self, user_id: str) -> None:
        if not self._limiter.hit(self._item, NAMESPACE, user_id):
            logger.info("Rate limit reached for user %s", user_id)
            raise RateLimitExceeded(
                "Too many messages, please wait a few minutes before trying again"
            )

    def remaining(self, user_id: str) -> int:
        stats = self._limiter.get_window_stats(self._item, NAMESPACE, user_id)
        return stats.remaining

    def reset(self, user_id: str) -> None:
        self._limiter.clear(self._item, NAMESPACE, user_id)
