"""
Bearer Token Authentication
===========================

Validates ``Authorization: Bearer <jwt>`` against the auth provider
(Supabase GoTrue, ``GET {supabase_url}/auth/v1/user``). Validated users are
cached for ``auth_cache_ttl`` seconds, keyed by the token's SHA-256 digest.

Auth can only be switched off when ``debug`` is on AND the environment is
``development``; any other combination logs a warning and keeps auth on.
"""

import hashlib
import logging
from typing import Optional

import httpx
from cachetools import TTLCache
from fastapi import Request
from pydantic import BaseModel

from futureself.config import settings
from futureself.core.errors import FutureSelfError
from futureself.core.structured_logging import user_id_var

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    """User returned by the auth provider."""

    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


# In-memory cache for validated tokens
token_cache: TTLCache = TTLCache(maxsize=1000, ttl=settings.auth_cache_ttl)

DEV_USER = AuthenticatedUser(user_id="dev-user-auth-disabled", email="dev@localhost", role="authenticated")


def _is_auth_enabled() -> bool:
    """Auth is off only for ``auth_enabled=False`` with debug on in development."""
    if settings.auth_enabled:
        return True
    if settings.debug and settings.environment == "development":
        logger.warning(
            "AUTH DISABLED: FUTURESELF_AUTH_ENABLED=false with debug=True in development. "
            "Do NOT use this in production."
        )
        return False
    logger.warning(
        "Ignoring FUTURESELF_AUTH_ENABLED=false because debug=%s and environment=%s.",
        settings.debug,
        settings.environment,
    )
    return True


def _cache_key(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ---------------------------------------------------------------------------
# Auth provider validation
# ---------------------------------------------------------------------------

_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    """Return shared httpx.AsyncClient, creating on first use."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _http_client


async def _validate_token_with_provider(token: str) -> Optional[AuthenticatedUser]:
    """Ask the auth provider who owns *token*. None when the token is rejected."""
    if not settings.supabase_url:
        logger.error("FUTURESELF_SUPABASE_URL is not set; cannot validate bearer tokens")
        raise FutureSelfError("FS-AUTH-004", detail="auth provider URL not configured")

    headers = {"Authorization": f"Bearer {token}"}
    if settings.supabase_anon_key:
        headers["apikey"] = settings.supabase_anon_key

    try:
        response = await _get_http_client().get(
            f"{settings.supabase_url.rstrip('/')}/auth/v1/user", headers=headers
        )
    except httpx.RequestError as exc:
        logger.error("HTTP request to auth provider failed: %s", exc)
        raise FutureSelfError("FS-AUTH-004", detail=str(exc)) from exc

    if response.status_code == 200:
        data = response.json()
        if data.get("id"):
            return AuthenticatedUser(user_id=data["id"], email=data.get("email"), role=data.get("role"))
        return None
    if response.status_code in (401, 403):
        logger.info("Auth provider rejected bearer token (%s)", response.status_code)
        return None
    logger.error(
        "Auth provider returned status %s while validating token: %s",
        response.status_code, response.text[:200],
    )
    raise FutureSelfError("FS-AUTH-004", detail=f"auth provider status {response.status_code}")


async def _authenticate(token: str) -> AuthenticatedUser:
    key = _cache_key(token)
    cached_user = token_cache.get(key)
    if cached_user:
        return cached_user

    validated_user = await _validate_token_with_provider(token)
    if not validated_user:
        raise FutureSelfError("FS-AUTH-002")

    token_cache[key] = validated_user
    return validated_user


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

async def get_current_user(request: Request) -> AuthenticatedUser:
    """Authenticated caller, or 401."""
    if not _is_auth_enabled():
        request.state.user = DEV_USER
        user_id_var.set(DEV_USER.user_id)
        return DEV_USER

    token = _bearer_token(request)
    if not token:
        raise FutureSelfError("FS-AUTH-001")

    user = await _authenticate(token)
    request.state.user = user
    user_id_var.set(user.user_id)
    return user


async def get_optional_user(request: Request) -> Optional[AuthenticatedUser]:
    """Like get_current_user, but anonymous requests get None instead of 401."""
    if not _is_auth_enabled():
        return await get_current_user(request)
    if _bearer_token(request) is None:
        return None
    return await get_current_user(request)


async def close_http_client():
    """Gracefully close the shared httpx client at shutdown."""
    global _http_client
    if _http_client and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None
