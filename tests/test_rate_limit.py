from unittest.mock import MagicMock

import pytest

from errors import RateLimitError
from rate_limit import TOO_MANY, TOO_QUICKLY, WAIT_A_MOMENT, RateLimiter
from redis_keys import REDIS_BURST_SHORT_KEY


@pytest.fixture
def limiter(services):
    return services.rate_limiter


def test_generic_limit_allows_ten_per_window(limiter):
    results = [limiter.check("createUser", "alice") for _ in range(11)]

    assert results[:10] == [True] * 10
    assert results[10] is False
    assert limiter.check("createUser", "bob")


def test_generic_limit_sets_window_ttl(limiter, redis_client):
    limiter.check("refreshToken", "alice")
    assert 0 < redis_client.ttl("rl:refreshToken:alice") <= 60


def test_limiter_fails_open_when_store_breaks():
    backend = MagicMock()
    backend.incr_window.side_effect = ConnectionError("redis down")
    limiter = RateLimiter(backend)

    assert limiter.check("createUser", "alice")
    limiter.check_chat_burst("room1", "alice")


def test_burst_short_window(limiter, clock):
    for _ in range(3):
        limiter.check_chat_burst("room1", "alice")
        clock.advance(2.5)

    with pytest.raises(RateLimitError) as exc:
        limiter.check_chat_burst("room1", "alice")
    assert exc.value.message == TOO_QUICKLY
    assert exc.value.status_code == 429

    # other rooms and users are counted separately
    limiter.check_chat_burst("room2", "alice")
    limiter.check_chat_burst("room1", "bob")


def test_burst_long_window(limiter, clock, redis_client):
    short_key = REDIS_BURST_SHORT_KEY.format(room_id="room1", username="alice")
    for _ in range(20):
        limiter.check_chat_burst("room1", "alice")
        # short window has passed
        redis_client.delete(short_key)
        clock.advance(2.1)

    with pytest.raises(RateLimitError) as exc:
        limiter.check_chat_burst("room1", "alice")
    assert exc.value.message == TOO_MANY


def test_burst_minimum_spacing(limiter, clock):
    limiter.check_chat_burst("room1", "alice")
    clock.advance(1.5)

    with pytest.raises(RateLimitError) as exc:
        limiter.check_chat_burst("room1", "alice")
    assert exc.value.message == WAIT_A_MOMENT
