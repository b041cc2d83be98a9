from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers.chat_rooms import chat_rooms_router
from backend import RedisBackend
from broadcast import user_channel
from constants import LOG_FILE, LOG_LEVEL
from errors import ChatError
from presence import ROOM_ID_REGEX
from redis_keys import PUBLIC_CHANNEL
from services import ChatServices, get_services
import re
import json
import asyncio
from typing import Dict, Optional
from logging_config import get_logger, setup_logging
import uuid

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

app = FastAPI(title="Chat Rooms API")

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_rooms_router)

logger.info("FastAPI application initialized")


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error for {request.method} {request.url}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


USER_CHANNEL_REGEX = re.compile(r"^chats-[A-Za-z0-9_.-]+$")

# In-memory socket tracking per channel
# Format: {channel: {connection_id: websocket}}
# Each instance relays only to its own sockets; Redis pub/sub reaches every instance.
channel_connections: Dict[str, Dict[str, WebSocket]] = {}

# One Redis listener task per channel
channel_listener_tasks: Dict[str, asyncio.Task] = {}


def channel_access_error(channel: str, services: ChatServices, username: Optional[str],
                         token: Optional[str]) -> Optional[str]:
    """Return a close reason when the socket may not subscribe to channel."""
    if channel == PUBLIC_CHANNEL:
        return None
    if channel.startswith("room-"):
        return None if ROOM_ID_REGEX.match(channel[len("room-"):]) else "Invalid channel"
    if not USER_CHANNEL_REGEX.match(channel):
        return "Invalid channel"
    # personal feeds carry private room lists and DMs
    if not username or user_channel(username.lower()) != channel:
        return "Unauthorized"
    if not services.tokens.validate(username, token).valid:
        return "Unauthorized"
    return None


async def listen_to_redis_channel(channel: str, backend: RedisBackend):
    """Background task relaying Redis pub/sub envelopes to the local sockets of a channel."""
    logger.info(f"Starting Redis pub/sub listener for channel: {channel}")
    pubsub = None
    try:
        pubsub = backend.subscribe(channel)
        loop = asyncio.get_event_loop()

        while True:
            if not channel_connections.get(channel):
                logger.info(f"No more connections on channel {channel}, stopping listener")
                break

            def get_message():
                """Blocking call to get next message from Redis pub/sub with timeout."""
                try:
                    return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
                except Exception as e:
                    logger.error(f"Error in pubsub.get_message() for channel {channel}: {e}", exc_info=True)
                    return None

            message = await loop.run_in_executor(None, get_message)
            if message is None or message.get("type") != "message":
                continue

            try:
                envelope = json.loads(message["data"])
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing message from Redis for channel {channel}: {e}")
                continue

            sockets = list(channel_connections.get(channel, {}).items())
            logger.debug(f"Relaying {envelope.get('event', 'unknown')} to {len(sockets)} sockets on {channel}")
            results = await asyncio.gather(
                *(ws.send_text(json.dumps(envelope)) for _, ws in sockets), return_exceptions=True
            )
            for (conn_id, _), result in zip(sockets, results):
                if isinstance(result, Exception):
                    channel_connections.get(channel, {}).pop(conn_id, None)
                    logger.info(f"Dropped unreachable connection {conn_id} from channel {channel}: {result}")

    except asyncio.CancelledError:
        logger.info(f"Redis listener task cancelled for channel: {channel}")
    except Exception as e:
        logger.error(f"Error in Redis listener for channel {channel}: {e}", exc_info=True)
    finally:
        if pubsub:
            try:
                pubsub.close()
            except Exception as e:
                logger.error(f"Error closing pub/sub for channel {channel}: {e}")
        channel_listener_tasks.pop(channel, None)


@app.websocket("/channels/{channel}/ws")
async def channel_websocket(channel: str, websocket: WebSocket, username: str = None, token: str = None,
                            services: ChatServices = Depends(get_services)):
    """Read-only relay of one broadcast channel.

    Query parameters:
    - username, token: required for personal chats-<username> channels
    """
    logger.info(f"WebSocket connection attempt for channel: {channel}")
    reason = channel_access_error(channel, services, username, token)
    if reason:
        logger.info(f"WebSocket connection rejected for channel {channel}: {reason}")
        await websocket.close(code=1008, reason=reason)
        return

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    channel_connections.setdefault(channel, {})[connection_id] = websocket
    logger.debug(f"Added connection {connection_id} to channel {channel}")

    if channel not in channel_listener_tasks or channel_listener_tasks[channel].done():
        channel_listener_tasks[channel] = asyncio.create_task(listen_to_redis_channel(channel, services.backend))

    try:
        await websocket.send_text(json.dumps({"event": "subscribed", "data": {"channel": channel}}))
        while True:
            # clients only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for connection {connection_id} on channel {channel}")
    finally:
        channel_connections.get(channel, {}).pop(connection_id, None)
        if not channel_connections.get(channel):
            channel_connections.pop(channel, None)
            task = channel_listener_tasks.pop(channel, None)
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                logger.debug(f"Cancelled listener for channel {channel}")
