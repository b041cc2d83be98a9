import asyncio
import json
import time
from unittest.mock import AsyncMock

from app import channel_connections, listen_to_redis_channel
from broadcast import ROOM_MESSAGE


def subscriber_count(redis_client, channel: str) -> int:
    return dict(redis_client.pubsub_numsub(channel)).get(channel, 0)


def wait_for_subscriber(redis_client, channel: str, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not subscriber_count(redis_client, channel):
        assert time.monotonic() < deadline, f"nobody subscribed to {channel}"
        time.sleep(0.05)


def test_room_channel_receives_broadcast(client, services, redis_client):
    room = services.rooms.create_room("ryo", "general")
    channel = f"room-{room.id}"

    with client.websocket_connect(f"/channels/{channel}/ws") as websocket:
        assert websocket.receive_json() == {"event": "subscribed", "data": {"channel": channel}}
        wait_for_subscriber(redis_client, channel)

        message = services.messages.send(room.id, "alice", "hello")
        services.broadcaster.room_message(message)

        assert websocket.receive_json() == {
            "event": ROOM_MESSAGE,
            "data": {"roomId": room.id, "message": message.to_dict()},
        }


def test_listener_drops_unreachable_sockets(services, redis_client):
    channel = "room-abc123"
    good = AsyncMock()
    dead = AsyncMock()
    dead.send_text.side_effect = RuntimeError("socket closed")

    async def relay_once():
        channel_connections[channel] = {"good": good, "dead": dead}
        task = asyncio.create_task(listen_to_redis_channel(channel, services.backend))
        try:
            for _ in range(100):
                if subscriber_count(redis_client, channel):
                    break
                await asyncio.sleep(0.05)
            services.backend.publish(channel, ROOM_MESSAGE, {"roomId": "abc123"})
            for _ in range(100):
                if "dead" not in channel_connections[channel]:
                    break
                await asyncio.sleep(0.05)
            assert list(channel_connections[channel]) == ["good"]
        finally:
            # listener stops once the channel has no sockets left
            channel_connections.pop(channel, None)
            await asyncio.wait_for(task, timeout=5)

    asyncio.run(relay_once())

    good.send_text.assert_awaited_once_with(json.dumps({"event": ROOM_MESSAGE, "data": {"roomId": "abc123"}}))
