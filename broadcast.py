import re
from typing import Iterable, List, Optional

from backend import RedisBackend
from identity import IdentityManager
from logging_config import get_logger
from presence import RoomRegistry, filter_rooms_for_user
from redis_keys import PUBLIC_CHANNEL, ROOM_CHANNEL, USER_CHANNEL
from schemas.chat import ChatMessage, DetailedRoom

logger = get_logger(__name__)

CHANNEL_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")

ROOMS_UPDATED = "rooms-updated"
ROOM_MESSAGE = "room-message"
MESSAGE_DELETED = "message-deleted"


def sanitize_channel_name(name: str) -> str:
    return CHANNEL_UNSAFE.sub("_", name)


def user_channel(username: str) -> str:
    return USER_CHANNEL.format(username=sanitize_channel_name(username))


def _rooms_payload(rooms: List[DetailedRoom]) -> dict:
    return {"rooms": [room.to_dict() for room in rooms]}


class Broadcaster:
    """Publishes room-list and message events over Redis pub/sub.

    None of these methods raise: a failed publish is logged and the request
    that triggered it still succeeds.
    """

    def __init__(self, backend: RedisBackend, rooms: RoomRegistry, identity: IdentityManager):
        self.backend = backend
        self.rooms = rooms
        self.identity = identity

    def rooms_updated(self):
        """Public room list to the shared channel, each user's own view to their channel."""
        try:
            all_rooms = self.rooms.list_detailed_rooms()
            messages = [(PUBLIC_CHANNEL, ROOMS_UPDATED, _rooms_payload(filter_rooms_for_user(all_rooms, None)))]
            for username in self.identity.list_usernames():
                user_rooms = filter_rooms_for_user(all_rooms, username)
                messages.append((user_channel(username), ROOMS_UPDATED, _rooms_payload(user_rooms)))
            self.backend.publish_many(messages)
            logger.info(f"Broadcast rooms-updated to {len(messages)} channels")
        except Exception as e:
            logger.error(f"Failed to broadcast rooms: {e}", exc_info=True)

    def rooms_updated_for(self, usernames: Iterable[str]):
        usernames = list(usernames or [])
        if not usernames:
            return
        try:
            all_rooms = self.rooms.list_detailed_rooms()
            self.backend.publish_many([
                (user_channel(username), ROOMS_UPDATED, _rooms_payload(filter_rooms_for_user(all_rooms, username)))
                for username in usernames
            ])
        except Exception as e:
            logger.error(f"Failed to broadcast rooms to {usernames}: {e}", exc_info=True)

    def _fan_out(self, room_id: str, event: str, payload: dict, members: Optional[List[str]] = None):
        messages = [(ROOM_CHANNEL.format(room_id=room_id), event, payload)]
        if members is None:
            room = self.rooms.get_room(room_id)
            if room is not None and room.is_private:
                members = room.members or []
        # public rooms: the room channel alone is enough
        for member in members or []:
            messages.append((user_channel(member), event, payload))
        self.backend.publish_many(messages)

    def room_message(self, message: ChatMessage):
        try:
            self._fan_out(message.room_id, ROOM_MESSAGE, {"roomId": message.room_id, "message": message.to_dict()})
        except Exception as e:
            logger.error(f"Error broadcasting new message in room {message.room_id}: {e}", exc_info=True)

    def message_deleted(self, room_id: str, message_id: str):
        try:
            self._fan_out(room_id, MESSAGE_DELETED, {"roomId": room_id, "messageId": message_id})
        except Exception as e:
            logger.error(f"Error broadcasting deletion of message {message_id}: {e}", exc_info=True)
