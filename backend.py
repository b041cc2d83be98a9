import json
from typing import Any, Iterable, List, Optional, Tuple

import redis

from constants import REDIS_URL, SCAN_BATCH_SIZE
from logging_config import get_logger

logger = get_logger(__name__)


def create_redis_client(url: str = REDIS_URL) -> redis.Redis:
    try:
        client = redis.Redis.from_url(url, decode_responses=True)
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {url.rsplit('@', 1)[-1]}")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {url.rsplit('@', 1)[-1]}: {e}", exc_info=True)
        raise


def parse_json_value(raw: Any) -> Any:
    """Decode a stored value that may be a JSON document or a plain string."""
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class RedisBackend:
    """Thin wrapper over the store primitives the chat service relies on.

    Keys are always fully formatted by the caller (see redis_keys.py); this
    layer knows nothing about users or rooms, only about values, TTLs, lists,
    cursors and channels.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    # Plain values

    def get(self, key: str) -> Optional[str]:
        return self.redis_client.get(key)

    def get_json(self, key: str) -> Any:
        return parse_json_value(self.redis_client.get(key))

    def mget_json(self, keys: List[str]) -> List[Any]:
        if not keys:
            return []
        return [parse_json_value(raw) for raw in self.redis_client.mget(keys)]

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        self.redis_client.set(key, value, ex=ttl)

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Check-and-set: only the first writer wins the key."""
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        created = self.redis_client.set(key, value, ex=ttl, nx=True)
        return bool(created)

    def exists(self, key: str) -> bool:
        return bool(self.redis_client.exists(key))

    def expire(self, key: str, ttl: int) -> bool:
        return bool(self.redis_client.expire(key, ttl))

    def ttl(self, key: str) -> int:
        return self.redis_client.ttl(key)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self.redis_client.delete(*keys)

    def delete_many(self, keys: Iterable[str]) -> int:
        """Delete a batch of keys in a single MULTI/EXEC."""
        keys = list(keys)
        if not keys:
            return 0
        pipe = self.redis_client.pipeline()
        for key in keys:
            pipe.delete(key)
        return sum(pipe.execute())

    # Counters

    def incr_window(self, key: str, window_seconds: int) -> int:
        """Atomically increment a counter, opening its TTL window on first use."""
        count = self.redis_client.incr(key)
        if count == 1:
            self.redis_client.expire(key, window_seconds)
        return count

    # Key scans

    def scan_keys(self, pattern: str, limit: Optional[int] = None) -> List[str]:
        """Collect keys matching pattern, following the cursor until it returns to 0."""
        keys: List[str] = []
        cursor = 0
        while True:
            cursor, batch = self.redis_client.scan(cursor=cursor, match=pattern, count=SCAN_BATCH_SIZE)
            keys.extend(batch)
            if limit is not None and len(keys) >= limit:
                break
            if int(cursor) == 0:
                break
        logger.debug(f"Scan {pattern} matched {len(keys)} keys")
        return keys

    # Lists

    def push_capped(self, key: str, value: Any, max_length: int):
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        pipe = self.redis_client.pipeline()
        pipe.lpush(key, value)
        pipe.ltrim(key, 0, max_length - 1)
        pipe.execute()

    def list_range(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        return self.redis_client.lrange(key, start, end)

    def list_remove(self, key: str, raw_value: str) -> int:
        return self.redis_client.lrem(key, 1, raw_value)

    def set_members(self, key: str) -> set:
        return self.redis_client.smembers(key)

    # Pub/sub

    def publish(self, channel: str, event: str, payload: dict) -> int:
        message_json = json.dumps({"event": event, "data": payload})
        subscribers = self.redis_client.publish(channel, message_json)
        logger.debug(f"Published {event} to channel {channel}, {subscribers} subscribers")
        return subscribers

    def publish_many(self, messages: List[Tuple[str, str, dict]]):
        """Publish (channel, event, payload) triples in one pipelined round trip."""
        if not messages:
            return
        pipe = self.redis_client.pipeline(transaction=False)
        for channel, event, payload in messages:
            pipe.publish(channel, json.dumps({"event": event, "data": payload}))
        pipe.execute()
        logger.debug(f"Published {len(messages)} messages")

    def subscribe(self, channel: str):
        """Create a pubsub subscriber for a channel."""
        pubsub = self.redis_client.pubsub()
        pubsub.subscribe(channel)
        logger.debug(f"Subscribed to Redis channel {channel}")
        return pubsub
