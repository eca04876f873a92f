"""
Rate Limiter: sliding-window request limits per (bucket, identifier).

Buckets:
    api        authenticated requests, keyed by user id
    checkout   checkout creation, keyed by user id
    anonymous  unauthenticated requests, keyed by client IP

Stores:
    sql     rows in ``rate_limit_hits``; shared across workers
    memory  in-process sliding windows; resets on restart (tests, single worker)

Fail-open: when the store raises, the request is allowed and the error
logged (``rate_limit_fail_open=True``). With the flag off the request is
refused with FS-RATE-002 instead.
"""
from __future__ import annotations

import logging
import math
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

import sqlalchemy as sa
from sqlmodel import Session

from futureself.core.errors import FutureSelfError
from futureself.models.security import RateLimitHit

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class _SlidingWindow:
    """Sliding-window counter for a single key. Callers hold the store lock."""

    __slots__ = ("_timestamps", "_window_s")

    def __init__(self, window_s: float):
        self._timestamps: list[float] = []
        self._window_s = window_s

    def hit(self, window_s: float, max_requests: int, now: float) -> Tuple[int, Optional[float]]:
        """Prune, record *now* if under the limit, return ``(count, oldest)``.

        ``count`` includes the new event when it was accepted.
        """
        self._window_s = window_s
        cutoff = now - window_s
        self._timestamps = [t for t in self._timestamps if t > cutoff]
        if len(self._timestamps) < max_requests:
            self._timestamps.append(now)
            return len(self._timestamps), self._timestamps[0]
        return len(self._timestamps) + 1, self._timestamps[0]

    def expired(self, now: float) -> bool:
        return not self._timestamps or self._timestamps[-1] <= now - self._window_s


class MemoryRateLimitStore:
    """In-process windows; keys whose hits have all aged out are swept."""

    sweep_interval_s = 60.0

    def __init__(self):
        self._windows: dict[tuple[str, str], _SlidingWindow] = {}
        self._lock = Lock()
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, bucket: str, identifier: str, window_s: float, max_requests: int, now: float):
        key = (bucket, identifier)
        with self._lock:
            if now - self._last_sweep >= self.sweep_interval_s:
                self._sweep(now)
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = _SlidingWindow(window_s)
            return window.hit(window_s, max_requests, now)

    def _sweep(self, now: float) -> None:
        stale = [key for key, window in self._windows.items() if window.expired(now)]
        for key in stale:
            del self._windows[key]
        self._last_sweep = now

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


class SqlRateLimitStore:
    """Sliding window over ``rate_limit_hits`` rows.

    Count and insert run under a per-key lock so parallel requests cannot
    all pass the same check. On PostgreSQL that is a transaction-scoped
    advisory lock; on SQLite the leading DELETE takes the database write
    lock.
    """

    def __init__(self, session_factory: Callable[[], AbstractContextManager[Session]]):
        self._session_factory = session_factory

    def hit(self, bucket: str, identifier: str, window_s: float, max_requests: int, now: float):
        t = RateLimitHit.__table__
        key = sa.and_(t.c.bucket == bucket, t.c.identifier == identifier)
        with self._session_factory() as session:
            conn = session.connection()
            if conn.dialect.name == "postgresql":
                conn.execute(
                    sa.select(sa.func.pg_advisory_xact_lock(sa.func.hashtext(f"{bucket}:{identifier}")))
                )
            conn.execute(sa.delete(t).where(key).where(t.c.hit_at <= now - window_s))
            count, oldest = conn.execute(
                sa.select(sa.func.count(), sa.func.min(t.c.hit_at)).where(key)
            ).one()
            if count < max_requests:
                conn.execute(sa.insert(t).values(bucket=bucket, identifier=identifier, hit_at=now))
                count += 1
                oldest = now if oldest is None else oldest
            else:
                count += 1
            session.commit()
        return count, oldest


class RateLimiter:
    """Applies ``(max_requests, window_s)`` limits on top of a store."""

    def __init__(self, store, fail_open: bool = True):
        self.store = store
        self.fail_open = fail_open

    def check(
        self,
        bucket: str,
        identifier: str,
        max_requests: int,
        window_s: float,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        now = time.time() if now is None else now
        try:
            count, oldest = self.store.hit(bucket, identifier, window_s, max_requests, now)
        except Exception as exc:
            if not self.fail_open:
                logger.error("Rate limiter store failed for %s/%s: %s", bucket, identifier, exc)
                raise FutureSelfError("FS-RATE-002", detail=str(exc)) from exc
            logger.warning("Rate limiter store failed for %s/%s, allowing request: %s", bucket, identifier, exc)
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                reset_at=now + window_s,
            )

        reset_at = (oldest if oldest is not None else now) + window_s
        if count > max_requests:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.info(
                "Rate limit exceeded: bucket=%s identifier=%s limit=%d retry_after=%ds",
                bucket, identifier, max_requests, retry_after,
            )
            return RateLimitResult(
                allowed=False,
                limit=max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )
        return RateLimitResult(
            allowed=True,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
        )
