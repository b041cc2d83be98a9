import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis

from ai_reply import CompletionClient, ReplyGenerator
from backend import RedisBackend, create_redis_client
from broadcast import Broadcaster
from constants import ADMIN_USERNAMES, PASSWORD_BCRYPT_ROUNDS
from identity import IdentityManager, make_admin_policy
from logging_config import get_logger
from messages import MessageStore
from moderation import ProfanityFilter
from presence import PresenceIndex, RoomRegistry
from rate_limit import RateLimiter
from tokens import TokenManager

logger = get_logger(__name__)


@dataclass
class ChatServices:
    backend: RedisBackend
    is_admin: Callable[[Optional[str]], bool]
    profanity_filter: ProfanityFilter
    tokens: TokenManager
    identity: IdentityManager
    rate_limiter: RateLimiter
    rooms: RoomRegistry
    messages: MessageStore
    broadcaster: Broadcaster
    replies: ReplyGenerator


def build_services(
    redis_client: redis.Redis,
    is_admin: Optional[Callable[[Optional[str]], bool]] = None,
    completion_client: Optional[CompletionClient] = None,
    profanity_filter: Optional[ProfanityFilter] = None,
    bcrypt_rounds: int = PASSWORD_BCRYPT_ROUNDS,
    clock: Callable[[], float] = time.time,
) -> ChatServices:
    backend = RedisBackend(redis_client)
    is_admin = is_admin or make_admin_policy(ADMIN_USERNAMES)
    profanity_filter = profanity_filter or ProfanityFilter()
    tokens = TokenManager(backend, clock=clock)
    identity = IdentityManager(backend, tokens, profanity_filter, bcrypt_rounds=bcrypt_rounds, clock=clock)
    rate_limiter = RateLimiter(backend, clock=clock)
    rooms = RoomRegistry(backend, PresenceIndex(backend, clock=clock), profanity_filter, is_admin, clock=clock)
    messages = MessageStore(backend, rooms, identity, rate_limiter, profanity_filter, clock=clock)
    return ChatServices(
        backend=backend,
        is_admin=is_admin,
        profanity_filter=profanity_filter,
        tokens=tokens,
        identity=identity,
        rate_limiter=rate_limiter,
        rooms=rooms,
        messages=messages,
        broadcaster=Broadcaster(backend, rooms, identity),
        replies=ReplyGenerator(completion_client or CompletionClient(), messages, profanity_filter),
    )


_services: Optional[ChatServices] = None


def get_services() -> ChatServices:
    """FastAPI dependency: the process-wide services, connected on first use."""
    global _services
    if _services is None:
        _services = build_services(create_redis_client())
        logger.info("Chat services initialized")
    return _services
