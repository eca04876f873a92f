"""
Tests for the sliding-window rate limiter: memory and SQL stores,
Retry-After hints, the fail-open policy, and the 429 path over HTTP.
"""

import threading
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from futureself.config import settings
from futureself.core.database import get_session_context
from futureself.core.errors import FutureSelfError
from futureself.services.rate_limiter import (
    MemoryRateLimitStore,
    RateLimiter,
    SqlRateLimitStore,
)


@pytest.fixture(params=["memory", "sql"])
def limiter(request):
    if request.param == "memory":
        store = MemoryRateLimitStore()
    else:
        store = SqlRateLimitStore(get_session_context)
    return RateLimiter(store, fail_open=True)


# ---------------------------------------------------------------------------
# Sliding window
# ---------------------------------------------------------------------------

class TestSlidingWindow:
    def test_third_request_in_window_rejected(self, limiter):
        now = 1_000_000.0
        first = limiter.check("api", "user-1", 2, 60, now=now)
        second = limiter.check("api", "user-1", 2, 60, now=now + 1)
        third = limiter.check("api", "user-1", 2, 60, now=now + 2)

        assert first.allowed and second.allowed
        assert first.remaining == 1
        assert second.remaining == 0
        assert not third.allowed
        assert third.retry_after == 58

    def test_window_slides(self, limiter):
        now = 1_000_000.0
        limiter.check("api", "user-1", 2, 60, now=now)
        limiter.check("api", "user-1", 2, 60, now=now + 30)
        assert not limiter.check("api", "user-1", 2, 60, now=now + 59).allowed

        # The first hit has left the window
        assert limiter.check("api", "user-1", 2, 60, now=now + 61).allowed

    def test_rejected_requests_do_not_extend_window(self, limiter):
        now = 1_000_000.0
        limiter.check("api", "user-1", 1, 60, now=now)
        for offset in range(1, 10):
            assert not limiter.check("api", "user-1", 1, 60, now=now + offset).allowed
        assert limiter.check("api", "user-1", 1, 60, now=now + 61).allowed

    def test_identifiers_independent(self, limiter):
        now = 1_000_000.0
        limiter.check("api", "user-1", 1, 60, now=now)
        assert not limiter.check("api", "user-1", 1, 60, now=now).allowed
        assert limiter.check("api", "user-2", 1, 60, now=now).allowed

    def test_buckets_independent(self, limiter):
        now = 1_000_000.0
        limiter.check("checkout", "user-1", 1, 60, now=now)
        assert limiter.check("api", "user-1", 1, 60, now=now).allowed

    def test_retry_after_at_least_one_second(self, limiter):
        now = 1_000_000.0
        limiter.check("api", "user-1", 1, 60, now=now)
        result = limiter.check("api", "user-1", 1, 60, now=now + 59.9)
        assert result.retry_after == 1


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

class TestHeaders:
    def test_allowed_headers(self):
        limiter = RateLimiter(MemoryRateLimitStore())
        result = limiter.check("api", "user-1", 5, 60, now=1000.0)
        headers = result.headers()
        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "4"
        assert headers["X-RateLimit-Reset"] == "1060"
        assert "Retry-After" not in headers

    def test_rejected_headers_include_retry_after(self):
        limiter = RateLimiter(MemoryRateLimitStore())
        limiter.check("api", "user-1", 1, 60, now=1000.0)
        headers = limiter.check("api", "user-1", 1, 60, now=1010.0).headers()
        assert headers["Retry-After"] == "50"
        assert headers["X-RateLimit-Remaining"] == "0"


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------

class TestFailurePolicy:
    def _broken_store(self):
        store = MagicMock()
        store.hit.side_effect = RuntimeError("database unavailable")
        return store

    def test_fail_open_allows_request(self):
        limiter = RateLimiter(self._broken_store(), fail_open=True)
        result = limiter.check("api", "user-1", 2, 60)
        assert result.allowed
        assert result.remaining == 2

    def test_fail_closed_raises(self):
        limiter = RateLimiter(self._broken_store(), fail_open=False)
        with pytest.raises(FutureSelfError) as exc_info:
            limiter.check("api", "user-1", 2, 60)
        assert exc_info.value.code == "FS-RATE-002"


# ---------------------------------------------------------------------------
# Store internals
# ---------------------------------------------------------------------------

class TestMemoryStoreSweep:
    def test_idle_keys_are_dropped(self):
        store = MemoryRateLimitStore()
        limiter = RateLimiter(store)
        now = 1_000_000.0
        limiter.check("anonymous", "10.0.0.1", 5, 60, now=now)
        limiter.check("anonymous", "10.0.0.2", 1, 60, now=now + 30)
        assert len(store) == 2

        limiter.check("anonymous", "10.0.0.3", 5, 60, now=now + 75)

        # 10.0.0.1 aged out; 10.0.0.2 still holds a hit inside its window
        assert len(store) == 2
        assert not limiter.check("anonymous", "10.0.0.2", 1, 60, now=now + 76).allowed

    def test_clear(self):
        store = MemoryRateLimitStore()
        store.hit("api", "user-1", 60, 5, 1000.0)
        store.clear()
        assert len(store) == 0


class TestSqlStoreSerialization:
    def test_postgres_takes_advisory_lock_first(self):
        conn = MagicMock()
        conn.dialect.name = "postgresql"
        conn.execute.return_value.one.return_value = (0, None)
        session = MagicMock()
        session.connection.return_value = conn

        @contextmanager
        def factory():
            yield session

        count, oldest = SqlRateLimitStore(factory).hit("api", "user-1", 60, 2, 1000.0)

        assert (count, oldest) == (1, 1000.0)
        first_statement = str(conn.execute.call_args_list[0].args[0])
        assert "pg_advisory_xact_lock" in first_statement

    def test_parallel_hits_never_exceed_limit(self):
        limiter = RateLimiter(SqlRateLimitStore(get_session_context), fail_open=False)
        now = 1_000_000.0
        barrier = threading.Barrier(8)
        results = []

        def _hit():
            barrier.wait()
            results.append(limiter.check("api", "user-1", 3, 60, now=now).allowed)

        threads = [threading.Thread(target=_hit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 8
        assert results.count(True) == 3


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class TestRateLimitedEndpoint:
    def test_third_call_gets_429_with_retry_after(self, client, as_user, monkeypatch):
        monkeypatch.setattr(settings, "api_rate_limit_max_requests", 2)
        monkeypatch.setattr(settings, "api_rate_limit_window_s", 60)
        as_user("user-1")

        first = client.get("/api/entitlements/me")
        second = client.get("/api/entitlements/me")
        third = client.get("/api/entitlements/me")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.status_code == 200
        assert third.status_code == 429
        assert int(third.headers["Retry-After"]) >= 1
        assert third.json()["error"]["code"] == "FS-RATE-001"

    def test_anonymous_requests_keyed_by_ip(self, client, monkeypatch):
        monkeypatch.setattr(settings, "anonymous_rate_limit_max_requests", 1)
        headers = {"x-forwarded-for": "203.0.113.7"}

        # /api/prices allows anonymous callers
        assert client.get("/api/prices", headers=headers).status_code != 429
        assert client.get("/api/prices", headers=headers).status_code == 429
        other = client.get("/api/prices", headers={"x-forwarded-for": "203.0.113.8"})
        assert other.status_code != 429
