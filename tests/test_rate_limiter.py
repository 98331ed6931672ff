from datetime import datetime

import pytest
from conftest import FakeClock, FakeRedis
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from teleclinic import rate_limiter
from teleclinic.domain.chats.rate_limit import ChatRateLimiter
from teleclinic.rate_limiter import check_rate_limit, create_rate_limiter, get_redis_provider


@pytest.fixture(autouse=True)
def _clear_memory_cache():
    rate_limiter.memory_cache.clear()
    yield
    rate_limiter.memory_cache.clear()


@pytest.fixture()
def redis_double():
    return FakeRedis(FakeClock(datetime(2026, 3, 10, 15, 0, 0)))


def _limited_app(redis_provider):
    app = FastAPI()
    limiter = create_rate_limiter(limit=2, window_seconds=60, key_prefix="test_login")

    @app.post("/login")
    async def login(_: None = Depends(limiter)):
        return {"ok": True}

    app.dependency_overrides[get_redis_provider] = lambda: redis_provider
    return app


def test_check_rate_limit_counts_within_window(redis_double):
    results = [check_rate_limit("k", 2, 60, redis_double) for _ in range(3)]

    assert [allowed for allowed, _, _ in results] == [True, True, False]
    assert results[1][1] == 2


def test_check_rate_limit_keeps_counting_in_memory_when_redis_reads_fail():
    class Broken:
        def get(self, key):
            raise RuntimeError("boom")

        def ttl(self, key):
            raise RuntimeError("boom")

        def set(self, key, value, ex=None):
            raise RuntimeError("boom")

    broken = Broken()
    assert check_rate_limit("fallback", 1, 60, broken)[0] is True
    assert check_rate_limit("fallback", 1, 60, broken)[0] is False


def test_check_rate_limit_picks_up_window_stored_by_other_workers(redis_double):
    redis_double.set("shared", 2, ex=60)

    allowed, count, ttl = check_rate_limit("shared", 2, 60, redis_double)
    assert allowed is False
    assert count == 2
    assert ttl == 60


def test_rate_limiter_dependency_returns_429(redis_double):
    client = TestClient(_limited_app(lambda: redis_double))

    assert client.post("/login").status_code == 200
    assert client.post("/login").status_code == 200
    response = client.post("/login")

    assert response.status_code == 429
    assert response.json()["detail"]["limit"] == 2
    assert "Retry-After" in response.headers


def test_rate_limiter_dependency_returns_503_without_redis():
    def unavailable():
        raise ConnectionError("redis down")

    client = TestClient(_limited_app(unavailable))
    assert client.post("/login").status_code == 503


def test_chat_burst_limiter_sets_window_on_first_hit(redis_double):
    limiter = ChatRateLimiter(lambda: redis_double, redis_double.clock)

    assert limiter.check_burst_limit("t", "p", 2, 30) == (True, None)
    assert redis_double.ttl("chat:burst:t:p") == 30
    assert limiter.check_burst_limit("t", "p", 2, 30) == (True, None)
    assert limiter.check_burst_limit("t", "p", 2, 30) == (False, "RATE_LIMITED")

    redis_double.clock.advance(seconds=30)
    assert limiter.check_burst_limit("t", "p", 2, 30) == (True, None)


def test_chat_daily_limiter_rolls_over_at_local_midnight(redis_double):
    limiter = ChatRateLimiter(lambda: redis_double, redis_double.clock)

    assert limiter.check_daily_limit("t", "p", 1) == (True, None)
    assert limiter.check_daily_limit("t", "p", 1) == (False, "DAILY_LIMIT_REACHED")

    # 03:00 UTC on the 11th is midnight in Buenos Aires
    redis_double.clock.advance(hours=12)
    assert limiter.check_daily_limit("t", "p", 1) == (True, None)
    assert "chat:daily:t:p:20260311" in redis_double.values


def test_chat_limiters_fail_closed():
    def unavailable():
        raise ConnectionError("redis down")

    limiter = ChatRateLimiter(unavailable, FakeClock(datetime(2026, 3, 10, 15, 0, 0)))

    assert limiter.check_burst_limit("t", "p", 5, 30) == (False, "RATE_LIMITED")
    assert limiter.check_daily_limit("t", "p", 5) == (False, "DAILY_LIMIT_REACHED")
