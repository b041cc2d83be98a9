import json
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from backend import RedisBackend, parse_json_value
from constants import MAX_MESSAGE_LENGTH, MESSAGE_FETCH_LIMIT, MESSAGE_HISTORY_LIMIT
from errors import DuplicateMessage, NotFoundError, ValidationError
from identity import IdentityManager, assert_valid_username
from logging_config import get_logger
from moderation import ProfanityFilter
from presence import RoomRegistry, assert_valid_room_id
from rate_limit import RateLimiter
from redis_keys import REDIS_MESSAGES_KEY, REDIS_MESSAGES_PATTERN
from schemas.chat import ChatMessage

logger = get_logger(__name__)


def _parse_message(raw) -> Optional[dict]:
    value = parse_json_value(raw)
    return value if isinstance(value, dict) else None


class MessageStore:
    """Per-room message log, newest first, capped at MESSAGE_HISTORY_LIMIT entries."""

    def __init__(
        self,
        backend: RedisBackend,
        rooms: RoomRegistry,
        identity: IdentityManager,
        rate_limiter: RateLimiter,
        profanity_filter: ProfanityFilter,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.rooms = rooms
        self.identity = identity
        self.rate_limiter = rate_limiter
        self.profanity_filter = profanity_filter
        self.clock = clock

    def recent(self, room_id: str, limit: int = MESSAGE_FETCH_LIMIT) -> List[dict]:
        items = self.backend.list_range(REDIS_MESSAGES_KEY.format(room_id=room_id), 0, limit - 1)
        messages = []
        for raw in items:
            message = _parse_message(raw)
            if message is None:
                logger.warning(f"Skipping unreadable message in room {room_id}")
                continue
            messages.append(message)
        return messages

    def get_messages(self, room_id: str) -> List[dict]:
        assert_valid_room_id(room_id)
        if not self.rooms.room_exists(room_id):
            raise NotFoundError("Room not found")
        return self.recent(room_id)

    def get_bulk_messages(self, room_ids: List[str]) -> Tuple[Dict[str, List[dict]], List[str], List[str]]:
        for room_id in room_ids:
            assert_valid_room_id(room_id)
        valid_room_ids = [room_id for room_id in room_ids if self.rooms.room_exists(room_id)]
        invalid_room_ids = [room_id for room_id in room_ids if room_id not in valid_room_ids]
        messages_map = {room_id: self.recent(room_id) for room_id in valid_room_ids}
        return messages_map, valid_room_ids, invalid_room_ids

    def last_message(self, room_id: str) -> Optional[ChatMessage]:
        items = self.backend.list_range(REDIS_MESSAGES_KEY.format(room_id=room_id), 0, 0)
        if not items:
            return None
        data = _parse_message(items[0])
        if data is None:
            logger.error(f"Error parsing last message for duplicate check in room {room_id}")
            return None
        return ChatMessage.model_validate(data)

    def append(self, room_id: str, username: str, content: str) -> ChatMessage:
        """Store already-sanitized content as a new message."""
        message = ChatMessage(
            id=uuid.uuid4().hex,
            room_id=room_id,
            username=username,
            content=content,
            timestamp=int(self.clock() * 1000),
        )
        self.backend.push_capped(
            REDIS_MESSAGES_KEY.format(room_id=room_id), json.dumps(message.to_dict()), MESSAGE_HISTORY_LIMIT
        )
        return message

    def send(self, room_id: str, username: Optional[str], content: Optional[str]) -> ChatMessage:
        username = assert_valid_username(username)
        assert_valid_room_id(room_id)
        if not content:
            raise ValidationError("Content is required")

        room = self.rooms.get_room(room_id)
        if room is not None and not room.is_private:
            self.rate_limiter.check_chat_burst(room_id, username)
        if room is None:
            raise NotFoundError("Room not found")

        self.identity.ensure_user_exists(username)

        # the stored (escaped) form is what the limit applies to
        safe_content = self.profanity_filter.sanitize(content)
        if len(safe_content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters")

        last = self.last_message(room_id)
        if last is not None and last.username == username and last.content == safe_content:
            logger.info(f"Duplicate message from {username} in room {room_id}")
            raise DuplicateMessage()

        message = self.append(room_id, username, safe_content)
        self.identity.touch_user(username)
        self.rooms.presence.refresh(room_id, username)
        logger.info(f"Message {message.id} stored in room {room_id} from {username}")
        return message

    def delete(self, room_id: str, message_id: str):
        if not self.rooms.room_exists(room_id):
            raise NotFoundError("Room not found")
        key = REDIS_MESSAGES_KEY.format(room_id=room_id)
        # LREM needs the exact stored value, so find it first
        for raw in self.backend.list_range(key):
            message = _parse_message(raw)
            if message is not None and message.get("id") == message_id:
                self.backend.list_remove(key, raw)
                logger.info(f"Message {message_id} deleted from room {room_id}")
                return
        raise NotFoundError("Message not found")

    def clear_all(self) -> int:
        keys = self.backend.scan_keys(REDIS_MESSAGES_PATTERN)
        self.backend.delete_many(keys)
        logger.info(f"Cleared messages from {len(keys)} rooms")
        return len(keys)
