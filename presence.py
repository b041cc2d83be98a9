import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from backend import RedisBackend
from constants import ROOM_PRESENCE_TTL_SECONDS
from errors import (
    ForbiddenError,
    InvalidRoomId,
    InvalidRoomType,
    MissingRoomName,
    NoMembersSpecified,
    NotFoundError,
    ValidationError,
)
from identity import assert_valid_username
from logging_config import get_logger
from moderation import ProfanityFilter
from redis_keys import (
    REDIS_MESSAGES_KEY,
    REDIS_PRESENCE_KEY,
    REDIS_PRESENCE_PATTERN,
    REDIS_ROOM_KEY,
    REDIS_ROOM_PATTERN,
    REDIS_ROOM_PRESENCE_PATTERN,
    REDIS_ROOM_USERS_KEY,
    REDIS_ROOM_USERS_PATTERN,
)
from schemas.chat import ChatRoom, DetailedRoom

logger = get_logger(__name__)

ROOM_ID_REGEX = re.compile(r"^[a-z0-9]+$", re.IGNORECASE)


def assert_valid_room_id(room_id: Optional[str]) -> str:
    if not room_id or not ROOM_ID_REGEX.match(room_id):
        logger.info(f"Invalid roomId format: {room_id}")
        raise InvalidRoomId()
    return room_id


def filter_rooms_for_user(rooms: List[ChatRoom], username: Optional[str]) -> List[ChatRoom]:
    """Public rooms for everyone, private rooms only for their members."""
    username = username.lower() if username else None
    visible = []
    for room in rooms:
        if not room.is_private:
            visible.append(room)
        elif username and room.members and username in room.members:
            visible.append(room)
    return visible


class PresenceIndex:
    """Who is active in which room, derived from presence:<room>:<user> keys.

    A key's existence is the truth; its TTL makes it a heartbeat, so users
    who stop touching a room drop out on their own.
    """

    def __init__(self, backend: RedisBackend, ttl: int = ROOM_PRESENCE_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.backend = backend
        self.ttl = ttl
        self.clock = clock

    def touch(self, room_id: str, username: str):
        self.backend.set(
            REDIS_PRESENCE_KEY.format(room_id=room_id, username=username), int(self.clock() * 1000), ttl=self.ttl
        )

    def refresh(self, room_id: str, username: str) -> bool:
        return self.backend.expire(REDIS_PRESENCE_KEY.format(room_id=room_id, username=username), self.ttl)

    def remove(self, room_id: str, username: str) -> bool:
        return self.backend.delete(REDIS_PRESENCE_KEY.format(room_id=room_id, username=username)) > 0

    def keys(self, room_id: str) -> List[str]:
        return self.backend.scan_keys(REDIS_ROOM_PRESENCE_PATTERN.format(room_id=room_id))

    def users(self, room_id: str) -> List[str]:
        return [key.rsplit(":", 1)[-1] for key in self.keys(room_id)]

    def all_keys(self) -> List[str]:
        return self.backend.scan_keys(REDIS_PRESENCE_PATTERN)


@dataclass
class LeaveOutcome:
    removed: bool = False
    deleted: bool = False
    count_changed: bool = False
    affected_members: List[str] = field(default_factory=list)


class RoomRegistry:
    def __init__(
        self,
        backend: RedisBackend,
        presence: PresenceIndex,
        profanity_filter: ProfanityFilter,
        is_admin: Callable[[Optional[str]], bool],
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.presence = presence
        self.profanity_filter = profanity_filter
        self.is_admin = is_admin
        self.clock = clock

    def get_room(self, room_id: str) -> Optional[ChatRoom]:
        data = self.backend.get_json(REDIS_ROOM_KEY.format(room_id=room_id))
        if not isinstance(data, dict):
            return None
        return ChatRoom.model_validate(data)

    def require_room(self, room_id: str, message: str = "Room not found") -> ChatRoom:
        room = self.get_room(room_id)
        if room is None:
            logger.info(f"Room {room_id} not found")
            raise NotFoundError(message)
        return room

    def room_exists(self, room_id: str) -> bool:
        return self.backend.exists(REDIS_ROOM_KEY.format(room_id=room_id))

    def save_room(self, room: ChatRoom):
        record = room.model_dump(by_alias=True, exclude_none=True, exclude={"users"})
        self.backend.set(REDIS_ROOM_KEY.format(room_id=room.id), record)

    def create_room(self, creator: str, name: Optional[str], room_type: str = "public",
                    members: Optional[List[str]] = None) -> ChatRoom:
        creator = creator.lower()
        if room_type not in ("public", "private"):
            raise InvalidRoomType()

        if room_type == "public":
            if not name:
                raise MissingRoomName()
            if not self.is_admin(creator):
                raise ForbiddenError("Forbidden - Only admin can create public rooms")
            if self.profanity_filter.is_profane(name):
                raise ValidationError("Room name contains inappropriate language")
            room_name = name.lower().replace(" ", "-")
            room_members = None
        else:
            if not members:
                raise NoMembersSpecified()
            room_members = []
            for member in members:
                member = assert_valid_username(member)
                if member != creator and member not in room_members:
                    room_members.append(member)
            if not room_members:
                raise NoMembersSpecified()
            room_members.append(creator)
            room_name = ", ".join(f"@{member}" for member in sorted(room_members))

        room = ChatRoom(
            id=uuid.uuid4().hex,
            name=room_name,
            type=room_type,
            created_at=int(self.clock() * 1000),
            user_count=len(room_members) if room_members else 0,
            members=room_members,
        )
        self.save_room(room)
        for member in room_members or []:
            self.presence.touch(room.id, member)
        logger.info(f"Room {room.id} created: name={room.name}, type={room.type}")
        return room

    def active_users(self, room_id: str) -> List[str]:
        """Live users from presence keys; also drops the legacy per-room user set."""
        users = self.presence.users(room_id)
        room_users_key = REDIS_ROOM_USERS_KEY.format(room_id=room_id)
        if self.backend.set_members(room_users_key):
            self.backend.delete(room_users_key)
        return users

    def refresh_user_count(self, room_id: str) -> int:
        user_count = len(self.active_users(room_id))
        room = self.get_room(room_id)
        if room is not None:
            room.user_count = user_count
            self.save_room(room)
        return user_count

    def list_room_keys(self) -> List[str]:
        return self.backend.scan_keys(REDIS_ROOM_PATTERN)

    def list_detailed_rooms(self) -> List[DetailedRoom]:
        rooms = []
        for data in self.backend.mget_json(self.list_room_keys()):
            if not isinstance(data, dict):
                continue
            room = ChatRoom.model_validate(data)
            users = self.active_users(room.id)
            rooms.append(DetailedRoom(**room.model_dump(exclude={"user_count"}), user_count=len(users), users=users))
        return rooms

    def visible_rooms(self, username: Optional[str]) -> List[DetailedRoom]:
        return filter_rooms_for_user(self.list_detailed_rooms(), username)

    def delete_cascade(self, room_id: str):
        """Drop a room together with its messages, legacy user set and presence keys."""
        keys = [
            REDIS_ROOM_KEY.format(room_id=room_id),
            REDIS_MESSAGES_KEY.format(room_id=room_id),
            REDIS_ROOM_USERS_KEY.format(room_id=room_id),
        ]
        keys.extend(self.presence.keys(room_id))
        self.backend.delete_many(keys)
        logger.info(f"Room {room_id} deleted with {len(keys) - 3} presence keys")

    # Presence-changing operations

    def join(self, room_id: str, username: str) -> int:
        self.require_room(room_id)
        self.presence.touch(room_id, username)
        return self.refresh_user_count(room_id)

    def leave(self, room_id: str, username: str) -> LeaveOutcome:
        room = self.require_room(room_id)
        if not self.presence.remove(room_id, username):
            return LeaveOutcome()

        if room.is_private:
            remaining = [member for member in room.members or [] if member != username]
            if len(remaining) <= 1:
                self.delete_cascade(room_id)
                return LeaveOutcome(removed=True, deleted=True, affected_members=list(room.members or []))
            room.members = remaining
            self.save_room(room)
            self.refresh_user_count(room_id)
            return LeaveOutcome(removed=True, count_changed=True)

        user_count = self.refresh_user_count(room_id)
        return LeaveOutcome(removed=True, count_changed=user_count != room.user_count)

    def delete_room(self, room_id: str, username: str) -> LeaveOutcome:
        """Admins delete public rooms; for a private room this is the caller leaving it."""
        room = self.require_room(room_id)
        username = username.lower()
        if room.is_private:
            if not room.members or username not in room.members:
                raise ForbiddenError("Unauthorized - not a member of this room")
        elif not self.is_admin(username):
            raise ForbiddenError("Unauthorized - admin access required for public rooms")

        if room.is_private:
            remaining = [member for member in room.members if member != username]
            if len(remaining) > 1:
                room.members = remaining
                self.save_room(room)
                self.presence.remove(room_id, username)
                self.refresh_user_count(room_id)
                logger.info(f"User {username} left private room {room_id}")
                return LeaveOutcome(removed=True, count_changed=True)
            affected = list(room.members)
        else:
            affected = []

        self.delete_cascade(room_id)
        return LeaveOutcome(removed=True, deleted=True, affected_members=affected)

    def switch(self, username: str, previous_room_id: Optional[str], next_room_id: Optional[str]) -> Dict[str, int]:
        changed = {}
        next_room = None
        if next_room_id:
            next_room = self.require_room(next_room_id, "Next room not found")

        if previous_room_id:
            previous_room = self.get_room(previous_room_id)
            # private presence follows membership, not viewing
            if previous_room is not None and not previous_room.is_private:
                self.presence.remove(previous_room_id, username)
                changed[previous_room_id] = self.refresh_user_count(previous_room_id)

        if next_room is not None:
            self.presence.touch(next_room_id, username)
            changed[next_room_id] = self.refresh_user_count(next_room_id)
        return changed

    # Maintenance

    def reset_user_counts(self) -> int:
        room_keys = self.list_room_keys()
        if not room_keys:
            return 0
        self.backend.delete_many(self.backend.scan_keys(REDIS_ROOM_USERS_PATTERN) + self.presence.all_keys())
        for data in self.backend.mget_json(room_keys):
            if isinstance(data, dict):
                room = ChatRoom.model_validate(data)
                room.user_count = 0
                self.save_room(room)
        return len(room_keys)

    def cleanup_expired_presence(self) -> int:
        prefix_length = len(REDIS_ROOM_KEY.format(room_id=""))
        room_keys = self.list_room_keys()
        for room_key in room_keys:
            room_id = room_key[prefix_length:]
            user_count = self.refresh_user_count(room_id)
            logger.info(f"Updated room {room_id} count to {user_count}")
        return len(room_keys)

    def debug_presence(self) -> dict:
        presence_keys = self.presence.all_keys()
        presence_data = {
            key: {"value": self.backend.get_json(key), "ttl": self.backend.ttl(key)} for key in presence_keys
        }
        rooms = [
            {"id": room.id, "name": room.name, "userCount": room.user_count, "users": room.users}
            for room in self.list_detailed_rooms()
        ]
        return {"presenceKeys": len(presence_keys), "presenceData": presence_data, "rooms": rooms}
