"""
Request guards: rate limiting and CSRF enforcement as FastAPI dependencies.

Usage::

    @router.post("/checkout", dependencies=[Depends(rate_limit("checkout"))])
    async def create_checkout(...):
        ...
"""

import logging
from typing import Optional, Tuple

from fastapi import Depends, Request, Response

from futureself.auth.bearer_auth import AuthenticatedUser, get_optional_user
from futureself.config import settings
from futureself.core.async_utils import run_sync
from futureself.core.errors import FutureSelfError
from futureself.dependencies import get_rate_limiter
from futureself.services.csrf_service import CsrfService
from futureself.services.rate_limiter import RateLimiter, RateLimitResult

logger = logging.getLogger(__name__)

CSRF_HEADER = "x-csrf-token"
ANONYMOUS_BUCKET = "anonymous"


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return (
        request.headers.get("x-real-ip")
        or request.headers.get("cf-connecting-ip")
        or (request.client.host if request.client else None)
        or "127.0.0.1"
    )


def bucket_limits(bucket: str) -> Tuple[int, int]:
    """``(max_requests, window_s)`` for a bucket, read from settings on each call."""
    if bucket == "checkout":
        return settings.checkout_rate_limit_max_requests, settings.checkout_rate_limit_window_s
    if bucket == ANONYMOUS_BUCKET:
        return settings.anonymous_rate_limit_max_requests, settings.anonymous_rate_limit_window_s
    return settings.api_rate_limit_max_requests, settings.api_rate_limit_window_s


def rate_limit(bucket: str = "api"):
    """Dependency factory: count the request against *bucket* or reject with 429.

    Authenticated callers are keyed by user id; anonymous callers fall into
    the ``anonymous`` bucket keyed by client IP.
    """
    async def check(
        request: Request,
        response: Response,
        user: Optional[AuthenticatedUser] = Depends(get_optional_user),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        if user is not None:
            limit_bucket, identifier = bucket, user.user_id
        else:
            limit_bucket, identifier = ANONYMOUS_BUCKET, get_client_ip(request)

        max_requests, window_s = bucket_limits(limit_bucket)
        result = await run_sync(limiter.check, limit_bucket, identifier, max_requests, window_s)
        if not result.allowed:
            raise FutureSelfError(
                "FS-RATE-001",
                detail=f"{limit_bucket}:{identifier}",
                headers=result.headers(),
            )
        response.headers.update(result.headers())
        return result

    return check


def csrf_token_from(request: Request, body_token: Optional[str]) -> Optional[str]:
    """The CSRF token from the ``X-CSRF-Token`` header, else from the body."""
    return request.headers.get(CSRF_HEADER) or body_token


async def enforce_csrf(csrf: CsrfService, user_id: str, token: Optional[str]) -> None:
    await run_sync(csrf.consume, user_id, token)
