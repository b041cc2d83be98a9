import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type

import pydantic
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors import AuthError, ChatError, ForbiddenError, NotFoundError, RateLimitError, ValidationError
from identity import assert_valid_username
from logging_config import get_logger, new_request_id, request_id_var
from presence import assert_valid_room_id
from schemas.chat import (
    AuthenticateWithPasswordRequest,
    CreateRoomRequest,
    CreateUserRequest,
    GenerateReplyRequest,
    GenerateTokenRequest,
    JoinLeaveRequest,
    RefreshTokenRequest,
    SendMessageRequest,
    SetPasswordRequest,
    SwitchRoomRequest,
)
from services import ChatServices, get_services

logger = get_logger(__name__)

chat_rooms_router = APIRouter(prefix="/api/chat-rooms", tags=["chat-rooms"])


class AuthLevel(str, Enum):
    PUBLIC = "public"
    USER = "user"
    ADMIN = "admin"


@dataclass
class ActionContext:
    services: ChatServices
    params: Mapping[str, str]
    body: Any = None
    username: Optional[str] = None
    token: Optional[str] = None
    header_username: Optional[str] = None


@dataclass(frozen=True)
class ActionSpec:
    handler: Callable[[ActionContext], JSONResponse]
    schema: Optional[Type[BaseModel]] = None
    auth: AuthLevel = AuthLevel.PUBLIC
    rate_limited: bool = False


ACTIONS: Dict[Tuple[str, str], ActionSpec] = {}


def action(method: str, name: str, schema: Optional[Type[BaseModel]] = None,
           auth: AuthLevel = AuthLevel.PUBLIC, rate_limited: bool = False):
    def register(handler):
        ACTIONS[(method, name)] = ActionSpec(handler, schema=schema, auth=auth, rate_limited=rate_limited)
        return handler
    return register


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def extract_auth(headers: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
    authorization = headers.get("authorization") or ""
    token = authorization[len("Bearer "):].strip() if authorization.startswith("Bearer ") else None
    username = headers.get("x-username")
    return (username.lower() if username else None), (token or None)


def require_param(params: Mapping[str, str], name: str) -> str:
    value = params.get(name)
    if not value:
        raise ValidationError(f"{name} query parameter is required")
    return value


def describe_validation_error(e: pydantic.ValidationError) -> str:
    first = e.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid request body: {location} {first.get('msg', '')}".strip()


# GET actions

def verified_caller(ctx: ActionContext) -> Optional[str]:
    """Username from the auth headers of a public action, when its token checks out."""
    if ctx.header_username and ctx.services.tokens.validate(ctx.header_username, ctx.token).valid:
        return ctx.header_username
    return None


@action("GET", "getRooms")
def get_rooms(ctx: ActionContext):
    caller = verified_caller(ctx)
    requested = (ctx.params.get("username") or "").lower()
    # private rooms are only listed for the authenticated caller
    if requested and requested != caller:
        caller = None
    rooms = ctx.services.rooms.visible_rooms(caller)
    return JSONResponse({"rooms": [room.to_dict() for room in rooms]})


@action("GET", "getRoom", auth=AuthLevel.USER)
def get_room(ctx: ActionContext):
    room_id = assert_valid_room_id(require_param(ctx.params, "roomId"))
    room = ctx.services.rooms.require_room(room_id)
    room.user_count = ctx.services.rooms.refresh_user_count(room_id)
    return JSONResponse({"room": room.to_dict()})


@action("GET", "getMessages")
def get_messages(ctx: ActionContext):
    room_id = require_param(ctx.params, "roomId")
    return JSONResponse({"messages": ctx.services.messages.get_messages(room_id)})


@action("GET", "getBulkMessages")
def get_bulk_messages(ctx: ActionContext):
    room_ids = [room_id.strip() for room_id in require_param(ctx.params, "roomIds").split(",") if room_id.strip()]
    if not room_ids:
        raise ValidationError("At least one room ID is required")
    messages_map, valid_room_ids, invalid_room_ids = ctx.services.messages.get_bulk_messages(room_ids)
    return JSONResponse({
        "messagesMap": messages_map,
        "validRoomIds": valid_room_ids,
        "invalidRoomIds": invalid_room_ids,
    })


@action("GET", "getRoomUsers", auth=AuthLevel.USER)
def get_room_users(ctx: ActionContext):
    room_id = assert_valid_room_id(require_param(ctx.params, "roomId"))
    return JSONResponse({"users": ctx.services.rooms.active_users(room_id)})


@action("GET", "getUsers")
def get_users(ctx: ActionContext):
    return JSONResponse({"users": ctx.services.identity.search_users(ctx.params.get("search") or "")})


@action("GET", "checkPassword", auth=AuthLevel.USER)
def check_password(ctx: ActionContext):
    return JSONResponse({"hasPassword": ctx.services.identity.has_password(ctx.username), "username": ctx.username})


@action("GET", "cleanupPresence", auth=AuthLevel.ADMIN)
def cleanup_presence(ctx: ActionContext):
    updated = ctx.services.rooms.cleanup_expired_presence()
    ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True, "message": f"Updated user counts for {updated} rooms"})


@action("GET", "debugPresence", auth=AuthLevel.ADMIN)
def debug_presence(ctx: ActionContext):
    return JSONResponse(ctx.services.rooms.debug_presence())


@action("GET", "verifyToken")
@action("POST", "verifyToken")
def verify_token(ctx: ActionContext):
    if not ctx.token:
        raise AuthError("Authorization token required")
    owner = ctx.services.tokens.find_owner(ctx.token)
    if owner is None:
        raise AuthError("Invalid authentication token")
    if owner.expired:
        return JSONResponse({
            "valid": True,
            "username": owner.username,
            "expired": True,
            "message": "Token is within grace period",
            "expiredAt": owner.expired_at,
        })
    return JSONResponse({"valid": True, "username": owner.username, "message": "Token is valid"})


# POST actions

@action("POST", "createRoom", schema=CreateRoomRequest, auth=AuthLevel.USER)
def create_room(ctx: ActionContext):
    body: CreateRoomRequest = ctx.body
    room = ctx.services.rooms.create_room(ctx.username, body.name, body.type, body.members)
    ctx.services.broadcaster.rooms_updated()
    return JSONResponse(status_code=201, content={"room": room.to_dict()})


def _join_leave_args(body: JoinLeaveRequest) -> Tuple[str, str]:
    if not body.room_id or not body.username:
        raise ValidationError("Room ID and username are required")
    return assert_valid_room_id(body.room_id), assert_valid_username(body.username)


@action("POST", "joinRoom", schema=JoinLeaveRequest)
def join_room(ctx: ActionContext):
    room_id, username = _join_leave_args(ctx.body)
    ctx.services.rooms.require_room(room_id)
    if not ctx.services.identity.user_exists(username):
        raise NotFoundError("User not found")
    ctx.services.rooms.join(room_id, username)
    ctx.services.identity.touch_user(username)
    ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True})


@action("POST", "leaveRoom", schema=JoinLeaveRequest)
def leave_room(ctx: ActionContext):
    room_id, username = _join_leave_args(ctx.body)
    outcome = ctx.services.rooms.leave(room_id, username)
    if outcome.deleted:
        ctx.services.broadcaster.rooms_updated_for(outcome.affected_members)
    elif outcome.count_changed:
        ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True})


@action("POST", "switchRoom", schema=SwitchRoomRequest)
def switch_room(ctx: ActionContext):
    body: SwitchRoomRequest = ctx.body
    if not body.username:
        raise ValidationError("Username is required")
    if body.previous_room_id:
        assert_valid_room_id(body.previous_room_id)
    if body.next_room_id:
        assert_valid_room_id(body.next_room_id)
    if body.previous_room_id == body.next_room_id:
        return JSONResponse({"success": True, "noop": True})

    user = ctx.services.identity.ensure_user_exists(body.username)
    ctx.services.rooms.switch(user.username, body.previous_room_id, body.next_room_id)
    if body.next_room_id:
        ctx.services.identity.touch_user(user.username)
    ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True})


@action("POST", "sendMessage", schema=SendMessageRequest, auth=AuthLevel.USER)
def send_message(ctx: ActionContext):
    body: SendMessageRequest = ctx.body
    message = ctx.services.messages.send(body.room_id, body.username or ctx.username, body.content)
    ctx.services.broadcaster.room_message(message)
    return JSONResponse(status_code=201, content={"message": message.to_dict()})


@action("POST", "generateRyoReply", schema=GenerateReplyRequest, auth=AuthLevel.USER, rate_limited=True)
def generate_ryo_reply(ctx: ActionContext):
    body: GenerateReplyRequest = ctx.body
    message = ctx.services.replies.generate(body.room_id, body.prompt, body.system_state)
    ctx.services.broadcaster.room_message(message)
    return JSONResponse(status_code=201, content={"message": message.to_dict()})


@action("POST", "createUser", schema=CreateUserRequest, rate_limited=True)
def create_user(ctx: ActionContext):
    body: CreateUserRequest = ctx.body
    session = ctx.services.identity.create_user(body.username, body.password)
    status_code = 201 if session.created else 200
    return JSONResponse(status_code=status_code, content={"user": session.user.to_dict(), "token": session.token})


@action("POST", "generateToken", schema=GenerateTokenRequest, auth=AuthLevel.USER, rate_limited=True)
def generate_token(ctx: ActionContext):
    username = (ctx.body.username or ctx.username).lower()
    if not ctx.services.identity.user_exists(username):
        raise NotFoundError("User not found")
    return JSONResponse(status_code=201, content={"token": ctx.services.tokens.issue(username)})


@action("POST", "refreshToken", schema=RefreshTokenRequest, rate_limited=True)
def refresh_token(ctx: ActionContext):
    body: RefreshTokenRequest = ctx.body
    if not body.username or not body.old_token:
        raise ValidationError("Username and oldToken are required")
    if not ctx.services.identity.user_exists(body.username):
        raise NotFoundError("User not found")
    token = ctx.services.tokens.refresh(body.username, body.old_token)
    return JSONResponse(status_code=201, content={"token": token})


@action("POST", "clearAllMessages", auth=AuthLevel.ADMIN)
def clear_all_messages(ctx: ActionContext):
    cleared = ctx.services.messages.clear_all()
    if not cleared:
        return JSONResponse({"success": True, "message": "No messages to clear"})
    ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True, "message": f"Cleared messages from {cleared} rooms"})


@action("POST", "resetUserCounts", auth=AuthLevel.ADMIN)
def reset_user_counts(ctx: ActionContext):
    updated = ctx.services.rooms.reset_user_counts()
    if not updated:
        return JSONResponse({"success": True, "message": "No rooms to update"})
    ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True, "message": f"Reset user counts for {updated} rooms"})


@action("POST", "authenticateWithPassword", schema=AuthenticateWithPasswordRequest, rate_limited=True)
def authenticate_with_password(ctx: ActionContext):
    body: AuthenticateWithPasswordRequest = ctx.body
    if not body.username or not body.password:
        raise ValidationError("Username and password are required")
    token = ctx.services.identity.authenticate_with_password(body.username, body.password, body.old_token)
    return JSONResponse({"token": token, "username": body.username.lower()})


@action("POST", "setPassword", schema=SetPasswordRequest, auth=AuthLevel.USER, rate_limited=True)
def set_password(ctx: ActionContext):
    ctx.services.identity.set_password(ctx.username, ctx.body.password)
    return JSONResponse({"success": True})


@action("POST", "listTokens", auth=AuthLevel.USER)
def list_tokens(ctx: ActionContext):
    tokens = [
        dict(entry, isCurrent=entry["token"] == ctx.token, maskedToken=f"...{entry['token'][-8:]}")
        for entry in ctx.services.tokens.list_tokens(ctx.username)
    ]
    return JSONResponse({"tokens": tokens, "count": len(tokens)})


@action("POST", "logoutAllDevices", auth=AuthLevel.USER)
def logout_all_devices(ctx: ActionContext):
    deleted_count = ctx.services.tokens.delete_all(ctx.username)
    return JSONResponse({
        "success": True,
        "message": f"Logged out from {deleted_count} devices",
        "deletedCount": deleted_count,
    })


@action("POST", "logoutCurrent", auth=AuthLevel.USER)
def logout_current(ctx: ActionContext):
    ctx.services.tokens.revoke(ctx.username, ctx.token)
    return JSONResponse({"success": True, "message": "Logged out from current session"})


# DELETE actions

@action("DELETE", "deleteRoom", auth=AuthLevel.USER)
def delete_room(ctx: ActionContext):
    room_id = assert_valid_room_id(require_param(ctx.params, "roomId"))
    outcome = ctx.services.rooms.delete_room(room_id, ctx.username)
    if outcome.deleted and outcome.affected_members:
        ctx.services.broadcaster.rooms_updated_for(outcome.affected_members)
    else:
        ctx.services.broadcaster.rooms_updated()
    return JSONResponse({"success": True})


@action("DELETE", "deleteMessage", auth=AuthLevel.ADMIN)
def delete_message(ctx: ActionContext):
    room_id = ctx.params.get("roomId")
    message_id = ctx.params.get("messageId")
    if not room_id or not message_id:
        raise ValidationError("roomId and messageId query parameters are required")
    ctx.services.messages.delete(room_id, message_id)
    ctx.services.broadcaster.message_deleted(room_id, message_id)
    return JSONResponse({"success": True})


# Dispatch

def authorize(spec: ActionSpec, ctx: ActionContext, raw_body: dict):
    if spec.auth is AuthLevel.PUBLIC:
        return
    body_username = raw_body.get("username") if isinstance(raw_body.get("username"), str) else None
    if body_username and body_username.lower() != (ctx.header_username or ""):
        logger.info(f"Auth mismatch: body username ({body_username}) != auth username ({ctx.header_username})")
        raise AuthError("Username mismatch")
    if not ctx.services.tokens.validate(ctx.header_username, ctx.token).valid:
        raise AuthError("Unauthorized")
    ctx.username = ctx.header_username
    if spec.auth is AuthLevel.ADMIN and not ctx.services.is_admin(ctx.username):
        raise ForbiddenError("Forbidden - Admin access required")


def rate_limit_identifier(raw_body: dict, headers: Mapping[str, str]) -> str:
    identifier = (
        (raw_body.get("username") if isinstance(raw_body.get("username"), str) else None)
        or headers.get("x-username")
        or headers.get("x-forwarded-for")
        or "anon"
    )
    return identifier.lower()


def dispatch(services: ChatServices, method: str, action_name: Optional[str], params: Mapping[str, str],
             headers: Mapping[str, str], raw_body: dict) -> JSONResponse:
    spec = ACTIONS.get((method, action_name or ""))
    if spec is None:
        return error_response("Invalid action", 400)

    header_username, token = extract_auth(headers)
    ctx = ActionContext(services=services, params=params, token=token, header_username=header_username)
    try:
        if spec.rate_limited and not services.rate_limiter.check(action_name, rate_limit_identifier(raw_body, headers)):
            raise RateLimitError()
        authorize(spec, ctx, raw_body)
        if spec.schema is not None:
            try:
                ctx.body = spec.schema.model_validate(raw_body)
            except pydantic.ValidationError as e:
                raise ValidationError(describe_validation_error(e))
        return spec.handler(ctx)
    except ChatError as e:
        logger.info(f"{method} {action_name} failed with {e.status_code}: {e.message}")
        return error_response(e.message, e.status_code)
    except Exception as e:
        logger.error(f"Error handling {method} {action_name}: {e}", exc_info=True)
        return error_response("Internal server error", 500)


async def handle(request: Request, services: ChatServices) -> JSONResponse:
    request_id_var.set(new_request_id())
    start_time = time.perf_counter()
    action_name = request.query_params.get("action")
    logger.info(f"{request.method} {request.url} action={action_name}")

    raw_body: Dict[str, Any] = {}
    if request.method == "POST" and "application/json" in request.headers.get("content-type", ""):
        try:
            parsed = json.loads(await request.body() or b"{}")
            if isinstance(parsed, dict):
                raw_body = parsed
        except ValueError:
            logger.info("Ignoring malformed JSON body")

    try:
        return await run_in_threadpool(
            dispatch, services, request.method, action_name, request.query_params, request.headers, raw_body
        )
    finally:
        duration = (time.perf_counter() - start_time) * 1000
        logger.info(f"Request completed in {duration:.2f}ms")


@chat_rooms_router.get("")
async def chat_rooms_get(request: Request, services: ChatServices = Depends(get_services)):
    return await handle(request, services)


@chat_rooms_router.post("")
async def chat_rooms_post(request: Request, services: ChatServices = Depends(get_services)):
    return await handle(request, services)


@chat_rooms_router.delete("")
async def chat_rooms_delete(request: Request, services: ChatServices = Depends(get_services)):
    return await handle(request, services)
