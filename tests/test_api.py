from unittest.mock import AsyncMock, patch

import pytest
from starlette.websockets import WebSocketDisconnect

URL = "/api/chat-rooms"


@pytest.fixture
def admin(register):
    return register("ryo")


@pytest.fixture
def general(client, admin):
    response = client.post(f"{URL}?action=createRoom", json={"name": "general"}, headers=admin)
    assert response.status_code == 201
    return response.json()["room"]


def test_chat_room_scenario(client, register, general, clock):
    alice = register("alice")
    bob = register("bob")

    for username in ("alice", "bob"):
        response = client.post(f"{URL}?action=joinRoom", json={"roomId": general["id"], "username": username})
        assert response.json() == {"success": True}

    response = client.post(
        f"{URL}?action=sendMessage",
        json={"roomId": general["id"], "username": "alice", "content": "hello"},
        headers=alice,
    )
    assert response.status_code == 201

    messages = client.get(f"{URL}?action=getMessages&roomId={general['id']}").json()["messages"]
    assert len(messages) == 1
    assert messages[0]["content"] == "hello"
    assert messages[0]["username"] == "alice"

    client.post(f"{URL}?action=leaveRoom", json={"roomId": general["id"], "username": "alice"})

    room = client.get(f"{URL}?action=getRoom&roomId={general['id']}", headers=bob).json()["room"]
    assert room["userCount"] == 1


def test_join_twice_does_not_double_count(client, register, general):
    bob = register("bob")
    for _ in range(2):
        client.post(f"{URL}?action=joinRoom", json={"roomId": general["id"], "username": "bob"})

    room = client.get(f"{URL}?action=getRoom&roomId={general['id']}", headers=bob).json()["room"]
    assert room["userCount"] == 1


def test_join_requires_existing_user_and_room(client, general):
    response = client.post(f"{URL}?action=joinRoom", json={"roomId": general["id"], "username": "ghost"})
    assert response.status_code == 404
    assert response.json() == {"error": "User not found"}

    response = client.post(f"{URL}?action=joinRoom", json={"roomId": general["id"]})
    assert response.status_code == 400


def test_private_room_needs_another_member(client, register):
    alice = register("alice")

    response = client.post(f"{URL}?action=createRoom", json={"type": "private", "members": ["alice"]}, headers=alice)

    assert response.status_code == 400
    assert response.json() == {"error": "At least one member is required for private rooms"}
    assert client.get(f"{URL}?action=getRooms", headers=alice).json()["rooms"] == []


def test_private_room_cascade_hides_room_from_both_members(client, register):
    alice = register("alice")
    bob = register("bob")
    response = client.post(f"{URL}?action=createRoom", json={"type": "private", "members": ["bob"]}, headers=alice)
    assert response.status_code == 201
    room_id = response.json()["room"]["id"]

    rooms = client.get(f"{URL}?action=getRooms&username=bob", headers=bob).json()["rooms"]
    assert room_id in [room["id"] for room in rooms]
    assert room_id not in [room["id"] for room in client.get(f"{URL}?action=getRooms").json()["rooms"]]

    client.post(f"{URL}?action=leaveRoom", json={"roomId": room_id, "username": "alice"})

    for headers in (alice, bob):
        response = client.get(f"{URL}?action=getRoom&roomId={room_id}", headers=headers)
        assert response.status_code == 404


def test_private_rooms_listed_only_for_authenticated_member(client, register):
    alice = register("alice")
    bob = register("bob")
    carol = register("carol")
    room_id = client.post(
        f"{URL}?action=createRoom", json={"type": "private", "members": ["bob"]}, headers=alice
    ).json()["room"]["id"]

    def listed(query, headers=None):
        rooms = client.get(f"{URL}?action=getRooms{query}", headers=headers).json()["rooms"]
        return room_id in [room["id"] for room in rooms]

    assert listed("", headers=bob)
    assert not listed("&username=bob")
    assert not listed("&username=bob", headers=carol)
    assert not listed("&username=bob", headers=dict(bob, Authorization="Bearer nope"))


def test_public_room_burst_limit(client, register, general, clock):
    alice = register("alice")
    statuses = []
    for i in range(4):
        response = client.post(
            f"{URL}?action=sendMessage",
            json={"roomId": general["id"], "username": "alice", "content": f"message {i}"},
            headers=alice,
        )
        statuses.append(response.status_code)
        clock.advance(2.5)

    assert statuses == [201, 201, 201, 429]
    assert response.json() == {"error": "You're sending messages too quickly. Please slow down."}


def test_duplicate_message_rejected_over_http(client, register, general, clock):
    alice = register("alice")
    body = {"roomId": general["id"], "username": "alice", "content": "hello"}

    assert client.post(f"{URL}?action=sendMessage", json=body, headers=alice).status_code == 201
    clock.advance(3)
    response = client.post(f"{URL}?action=sendMessage", json=body, headers=alice)
    assert response.status_code == 400
    assert response.json() == {"error": "Duplicate message detected"}


def test_protected_actions_require_auth(client, register, general):
    alice = register("alice")
    body = {"roomId": general["id"], "username": "alice", "content": "hello"}

    assert client.post(f"{URL}?action=sendMessage", json=body).status_code == 401

    bad_token = dict(alice, Authorization="Bearer nope")
    assert client.post(f"{URL}?action=sendMessage", json=body, headers=bad_token).status_code == 401

    response = client.post(f"{URL}?action=sendMessage", json=dict(body, username="bob"), headers=alice)
    assert response.status_code == 401
    assert response.json() == {"error": "Username mismatch"}

    assert client.get(f"{URL}?action=checkPassword").status_code == 401
    assert client.delete(f"{URL}?action=deleteRoom&roomId={general['id']}").status_code == 401


def test_admin_actions_forbidden_for_users(client, register, general):
    alice = register("alice")

    for method, query in (
        ("post", "clearAllMessages"),
        ("post", "resetUserCounts"),
        ("get", "cleanupPresence"),
        ("get", "debugPresence"),
    ):
        response = getattr(client, method)(f"{URL}?action={query}", headers=alice)
        assert response.status_code == 403, query

    response = client.post(f"{URL}?action=createRoom", json={"name": "random"}, headers=alice)
    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden - Only admin can create public rooms"}


def test_admin_maintenance(client, register, admin, general):
    alice = register("alice")
    client.post(f"{URL}?action=joinRoom", json={"roomId": general["id"], "username": "alice"})
    message = client.post(
        f"{URL}?action=sendMessage",
        json={"roomId": general["id"], "username": "alice", "content": "hello"},
        headers=alice,
    ).json()["message"]

    response = client.delete(
        f"{URL}?action=deleteMessage&roomId={general['id']}&messageId={message['id']}", headers=admin
    )
    assert response.json() == {"success": True}
    assert client.get(f"{URL}?action=getMessages&roomId={general['id']}").json()["messages"] == []

    assert client.post(f"{URL}?action=clearAllMessages", headers=admin).json()["message"] == "No messages to clear"
    response = client.post(f"{URL}?action=resetUserCounts", headers=admin)
    assert response.json()["message"] == "Reset user counts for 1 rooms"
    assert client.get(f"{URL}?action=debugPresence", headers=admin).json()["presenceKeys"] == 0
    assert client.get(f"{URL}?action=cleanupPresence", headers=admin).json()["success"] is True

    assert client.delete(f"{URL}?action=deleteRoom&roomId={general['id']}", headers=alice).status_code == 403
    assert client.delete(f"{URL}?action=deleteRoom&roomId={general['id']}", headers=admin).status_code == 200
    assert client.get(f"{URL}?action=getRooms").json()["rooms"] == []


def test_switch_room(client, register, admin):
    alice = register("alice")
    first = client.post(f"{URL}?action=createRoom", json={"name": "first"}, headers=admin).json()["room"]
    second = client.post(f"{URL}?action=createRoom", json={"name": "second"}, headers=admin).json()["room"]

    response = client.post(f"{URL}?action=switchRoom", json={"nextRoomId": first["id"], "username": "alice"})
    assert response.json() == {"success": True}

    response = client.post(
        f"{URL}?action=switchRoom",
        json={"previousRoomId": first["id"], "nextRoomId": first["id"], "username": "alice"},
    )
    assert response.json() == {"success": True, "noop": True}

    client.post(
        f"{URL}?action=switchRoom",
        json={"previousRoomId": first["id"], "nextRoomId": second["id"], "username": "alice"},
    )
    users = client.get(f"{URL}?action=getRoomUsers&roomId={second['id']}", headers=alice).json()["users"]
    assert users == ["alice"]
    assert client.get(f"{URL}?action=getRoomUsers&roomId={first['id']}", headers=alice).json()["users"] == []


def test_create_user_register_or_login(client):
    response = client.post(f"{URL}?action=createUser", json={"username": "Alice", "password": "correct-horse"})
    assert response.status_code == 201
    assert response.json()["user"]["username"] == "alice"

    response = client.post(f"{URL}?action=createUser", json={"username": "alice", "password": "correct-horse"})
    assert response.status_code == 200
    assert response.json()["token"]

    response = client.post(f"{URL}?action=createUser", json={"username": "alice"})
    assert response.status_code == 409
    assert response.json() == {"error": "Username already taken"}


def test_create_user_rejects_bad_names(client):
    assert client.post(f"{URL}?action=createUser", json={"username": "jerk"}).status_code == 400
    response = client.post(f"{URL}?action=createUser", content="not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json() == {"error": "Username is required"}


def test_sensitive_actions_are_rate_limited(client):
    statuses = [
        client.post(f"{URL}?action=createUser", json={"username": "alice"}).status_code for _ in range(11)
    ]
    assert statuses[0] == 201
    assert statuses[1:10] == [409] * 9
    assert statuses[10] == 429


def test_token_lifecycle(client, register):
    alice = register("alice")
    token = alice["Authorization"].split()[1]

    response = client.get(f"{URL}?action=verifyToken", headers={"Authorization": f"Bearer {token}"})
    assert response.json() == {"valid": True, "username": "alice", "message": "Token is valid"}

    second = client.post(f"{URL}?action=generateToken", json={}, headers=alice)
    assert second.status_code == 201

    listed = client.post(f"{URL}?action=listTokens", headers=alice).json()
    assert listed["count"] == 2
    current = [entry for entry in listed["tokens"] if entry["isCurrent"]]
    assert current[0]["maskedToken"] == f"...{token[-8:]}"

    refreshed = client.post(f"{URL}?action=refreshToken", json={"username": "alice", "oldToken": token})
    assert refreshed.status_code == 201
    new_token = refreshed.json()["token"]

    response = client.post(f"{URL}?action=verifyToken", headers={"Authorization": f"Bearer {token}"})
    assert response.json()["expired"] is True

    new_headers = {"Authorization": f"Bearer {new_token}", "X-Username": "alice"}
    response = client.post(f"{URL}?action=logoutCurrent", headers=new_headers)
    assert response.json()["success"] is True
    assert client.get(f"{URL}?action=checkPassword", headers=new_headers).status_code == 401

    assert client.get(f"{URL}?action=verifyToken").status_code == 401


def test_logout_all_devices(client, register):
    alice = register("alice")
    client.post(f"{URL}?action=generateToken", json={}, headers=alice)

    response = client.post(f"{URL}?action=logoutAllDevices", headers=alice).json()

    assert response["success"] is True
    assert response["deletedCount"] >= 2
    assert client.get(f"{URL}?action=checkPassword", headers=alice).status_code == 401


def test_password_actions(client, register):
    alice = register("alice")

    assert client.get(f"{URL}?action=checkPassword", headers=alice).json() == {
        "hasPassword": False,
        "username": "alice",
    }
    response = client.post(f"{URL}?action=setPassword", json={"password": "short"}, headers=alice)
    assert response.status_code == 400
    assert client.post(f"{URL}?action=setPassword", json={"password": "correct-horse"}, headers=alice).status_code == 200

    response = client.post(
        f"{URL}?action=authenticateWithPassword", json={"username": "alice", "password": "correct-horse"}
    )
    assert response.status_code == 200
    assert response.json()["username"] == "alice"

    response = client.post(
        f"{URL}?action=authenticateWithPassword", json={"username": "alice", "password": "wrong-horse"}
    )
    assert response.status_code == 401


def test_users_and_bulk_messages(client, register, general):
    register("alice")
    register("alina")

    users = client.get(f"{URL}?action=getUsers&search=ali").json()["users"]
    assert sorted(user["username"] for user in users) == ["alice", "alina"]

    response = client.get(f"{URL}?action=getBulkMessages&roomIds={general['id']},gone")
    assert response.json() == {
        "messagesMap": {general["id"]: []},
        "validRoomIds": [general["id"]],
        "invalidRoomIds": ["gone"],
    }
    assert client.get(f"{URL}?action=getBulkMessages&roomIds=bad-id").status_code == 400


def test_generate_ryo_reply(client, register, general, services):
    alice = register("alice")
    services.replies.completion_client.complete.return_value = "yo, love this"

    response = client.post(
        f"{URL}?action=generateRyoReply", json={"roomId": general["id"], "prompt": "hey ryo"}, headers=alice
    )

    assert response.status_code == 201
    assert response.json()["message"]["username"] == "ryo"
    assert response.json()["message"]["content"] == "yo, love this"

    services.replies.completion_client.complete.side_effect = RuntimeError("upstream down")
    response = client.post(
        f"{URL}?action=generateRyoReply", json={"roomId": general["id"], "prompt": "again"}, headers=alice
    )
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to generate reply"}


def test_unknown_action(client):
    response = client.get(f"{URL}?action=doSomething")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid action"}
    assert client.post(URL).status_code == 400


def test_unexpected_errors_become_500(client, services):
    with patch.object(services.rooms, "visible_rooms", side_effect=RuntimeError("boom")):
        response = client.get(f"{URL}?action=getRooms")
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_personal_channel_requires_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/channels/chats-alice/ws"):
            pass
    assert exc.value.code == 1008


def test_invalid_channel_rejected(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/channels/lobby/ws"):
            pass
    assert exc.value.code == 1008


@patch("app.listen_to_redis_channel", new_callable=AsyncMock)
def test_personal_channel_with_valid_token(mock_listener, client, register):
    alice = register("alice")
    token = alice["Authorization"].split()[1]

    with client.websocket_connect(f"/channels/chats-alice/ws?username=alice&token={token}") as websocket:
        assert websocket.receive_json() == {"event": "subscribed", "data": {"channel": "chats-alice"}}
    mock_listener.assert_called_once()

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/channels/chats-bob/ws?username=alice&token={token}"):
            pass
    assert exc.value.code == 1008
