from unittest.mock import MagicMock

import fakeredis
import pytest
from fastapi.testclient import TestClient

from app import app
from identity import make_admin_policy
from moderation import ProfanityFilter
from services import build_services, get_services

START_TIME = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope="session")
def profanity_filter():
    return ProfanityFilter(extra_words=["badword1", "badword2", "inappropriate", "jerk"])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def services(redis_client, clock, profanity_filter):
    return build_services(
        redis_client,
        is_admin=make_admin_policy(["ryo"]),
        completion_client=MagicMock(),
        profanity_filter=profanity_filter,
        bcrypt_rounds=4,
        clock=clock,
    )


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    """Create a user through the API and return auth headers for it."""

    def _register(username: str, password: str = None) -> dict:
        body = {"username": username}
        if password:
            body["password"] = password
        response = client.post("/api/chat-rooms?action=createUser", json=body)
        assert response.status_code == 201, response.text
        return {"Authorization": f"Bearer {response.json()['token']}", "X-Username": username}

    return _register
