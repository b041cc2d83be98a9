import time
from typing import Callable, Optional

from backend import RedisBackend
from constants import (
    CHAT_BURST_LONG_LIMIT,
    CHAT_BURST_LONG_WINDOW_SECONDS,
    CHAT_BURST_SHORT_LIMIT,
    CHAT_BURST_SHORT_WINDOW_SECONDS,
    CHAT_MIN_INTERVAL_SECONDS,
    RATE_LIMIT_ATTEMPTS,
    RATE_LIMIT_WINDOW_SECONDS,
)
from errors import TooManyRequests
from logging_config import get_logger
from redis_keys import REDIS_BURST_LAST_KEY, REDIS_BURST_LONG_KEY, REDIS_BURST_SHORT_KEY, REDIS_RATE_LIMIT_KEY

logger = get_logger(__name__)

TOO_QUICKLY = "You're sending messages too quickly. Please slow down."
TOO_MANY = "Too many messages in a short period. Please wait a moment."
WAIT_A_MOMENT = "Please wait a moment before sending another message."


class RateLimiter:
    """Fixed-window counters kept in Redis.

    Both limiters fail open: if the store misbehaves the request goes
    through, chat availability wins over strict throttling.
    """

    def __init__(self, backend: RedisBackend, clock: Callable[[], float] = time.time):
        self.backend = backend
        self.clock = clock

    def check(self, action: str, identifier: str, limit: int = RATE_LIMIT_ATTEMPTS,
              window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> bool:
        key = REDIS_RATE_LIMIT_KEY.format(action=action, identifier=identifier)
        try:
            count = self.backend.incr_window(key, window_seconds)
        except Exception as e:
            logger.error(f"Rate limit check failed for {action}:{identifier}: {e}", exc_info=True)
            return True
        if count > limit:
            logger.info(f"Rate limit exceeded for {action} by {identifier}: {count} attempts")
            return False
        return True

    def _burst_violation(self, room_id: str, username: str) -> Optional[str]:
        short_key = REDIS_BURST_SHORT_KEY.format(room_id=room_id, username=username)
        if self.backend.incr_window(short_key, CHAT_BURST_SHORT_WINDOW_SECONDS) > CHAT_BURST_SHORT_LIMIT:
            return TOO_QUICKLY

        long_key = REDIS_BURST_LONG_KEY.format(room_id=room_id, username=username)
        if self.backend.incr_window(long_key, CHAT_BURST_LONG_WINDOW_SECONDS) > CHAT_BURST_LONG_LIMIT:
            return TOO_MANY

        last_key = REDIS_BURST_LAST_KEY.format(room_id=room_id, username=username)
        now_ms = int(self.clock() * 1000)
        last_sent = self.backend.get(last_key)
        if last_sent and now_ms - int(last_sent) < CHAT_MIN_INTERVAL_SECONDS * 1000:
            return WAIT_A_MOMENT
        self.backend.set(last_key, now_ms, ttl=CHAT_BURST_LONG_WINDOW_SECONDS)
        return None

    def check_chat_burst(self, room_id: str, username: str):
        """Raise TooManyRequests when a public-room message breaks any of the three tiers."""
        try:
            reason = self._burst_violation(room_id, username)
        except Exception as e:
            logger.error(f"Chat burst rate-limit check failed: {e}", exc_info=True)
            return
        if reason:
            logger.info(f"Chat burst limit hit by {username} in room {room_id}: {reason}")
            raise TooManyRequests(reason)
