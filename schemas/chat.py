from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# Stored records

class ChatUser(CamelModel):
    username: str
    last_active: int = 0


class ChatRoom(CamelModel):
    id: str
    name: str
    type: Literal["public", "private"] = "public"
    created_at: int = 0
    user_count: int = 0
    members: Optional[List[str]] = None

    @property
    def is_private(self) -> bool:
        return self.type == "private"


class DetailedRoom(ChatRoom):
    users: List[str] = Field(default_factory=list)


class ChatMessage(CamelModel):
    id: str
    room_id: str
    username: str
    content: str
    timestamp: int


# Request bodies

class CreateRoomRequest(CamelModel):
    name: Optional[str] = None
    type: str = "public"
    members: List[str] = Field(default_factory=list)


class JoinLeaveRequest(CamelModel):
    room_id: Optional[str] = None
    username: Optional[str] = None


class SwitchRoomRequest(CamelModel):
    previous_room_id: Optional[str] = None
    next_room_id: Optional[str] = None
    username: Optional[str] = None


class SendMessageRequest(CamelModel):
    room_id: Optional[str] = None
    username: Optional[str] = None
    content: Optional[str] = None


class CreateUserRequest(CamelModel):
    username: Optional[str] = None
    password: Optional[str] = None


class GenerateTokenRequest(CamelModel):
    username: Optional[str] = None


class RefreshTokenRequest(CamelModel):
    username: Optional[str] = None
    old_token: Optional[str] = None


class AuthenticateWithPasswordRequest(CamelModel):
    username: Optional[str] = None
    password: Optional[str] = None
    old_token: Optional[str] = None


class SetPasswordRequest(CamelModel):
    password: Optional[str] = None


class ChatRoomContext(CamelModel):
    recent_messages: Optional[str] = None
    mentioned_message: Optional[str] = None


class SystemState(CamelModel):
    chat_room_context: Optional[ChatRoomContext] = None


class GenerateReplyRequest(CamelModel):
    room_id: Optional[str] = None
    prompt: Optional[str] = None
    system_state: Optional[SystemState] = None
