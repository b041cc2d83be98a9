from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from ai_reply import PERSONA_SYSTEM_PROMPT, CompletionClient, build_reply_messages
from errors import ChatError, NotFoundError, ValidationError
from schemas.chat import SystemState


def test_reply_messages_without_context():
    messages = build_reply_messages("room1", "yo")
    assert messages == [
        {"role": "system", "content": PERSONA_SYSTEM_PROMPT},
        {"role": "user", "content": "yo"},
    ]


def test_reply_messages_with_room_context():
    state = SystemState.model_validate({"chatRoomContext": {"recentMessages": "alice: hi"}})

    messages = build_reply_messages("room1", "what's up", state)

    assert len(messages) == 3
    context = messages[1]["content"]
    assert "roomId: room1" in context
    assert "alice: hi" in context
    assert "mentionedMessage: what's up" in context


def test_completion_client_uses_responses_api():
    client = CompletionClient(model_name="test-model", temperature=0.6)
    client._client = MagicMock()
    client._client.responses.create.return_value = SimpleNamespace(output_text="  yo  ")

    assert client.complete([{"role": "user", "content": "hi"}]) == "yo"
    client._client.responses.create.assert_called_once_with(
        model="test-model", input=[{"role": "user", "content": "hi"}], temperature=0.6
    )


def test_generate_stores_persona_message(services):
    room = services.rooms.create_room("ryo", "general")
    services.replies.completion_client.complete.return_value = "love this <3 jerk"

    message = services.replies.generate(room.id, "thoughts?")

    assert message.username == "ryo"
    assert message.content.startswith("love this &lt;3 ")
    assert "jerk" not in message.content
    assert services.messages.get_messages(room.id)[0]["id"] == message.id


def test_generate_validation(services):
    room = services.rooms.create_room("ryo", "general")
    with pytest.raises(ValidationError, match="Prompt is required"):
        services.replies.generate(room.id, "")
    with pytest.raises(NotFoundError):
        services.replies.generate("missing", "hi")


def test_generate_failure_is_500(services):
    room = services.rooms.create_room("ryo", "general")
    services.replies.completion_client.complete.side_effect = TimeoutError("slow")

    with pytest.raises(ChatError) as exc:
        services.replies.generate(room.id, "hi")
    assert exc.value.status_code == 500
    assert exc.value.message == "Failed to generate reply"
