"""
Health check endpoints.

- GET /api/health       cheap: process alive, version, uptime
- GET /api/health/deep  bounded checks for database, Stripe, auth provider
                          and memory (2s timeout each); 503 when any is down
"""
import asyncio
import logging
import time
from datetime import datetime, timezone

import psutil
import sqlalchemy as sa
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from futureself.config import settings
from futureself.core.database import get_engine
from futureself.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds
NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}


# ── Cheap health ─────────────────────────────────────────────────────
@router.get("/health")
async def health_check():
    """Cheap health check, no network calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Deep health ──────────────────────────────────────────────────────
@router.get("/health/deep")
async def deep_health_check():
    """Deep health check with bounded component checks."""
    start = time.perf_counter()
    checks = [
        ("database", _check_database()),
        ("stripe", _check_stripe()),
        ("auth_provider", _check_auth_provider()),
        ("memory", _check_memory()),
    ]

    results = await asyncio.gather(
        *[_bounded_check(name, coro) for name, coro in checks],
        return_exceptions=True,
    )

    components = {}
    for name_result in results:
        if isinstance(name_result, Exception):
            continue
        name, result = name_result
        components[name] = result

    # Overall status = worst component
    statuses = [c.get("status", "down") for c in components.values()]
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return JSONResponse(
        status_code=503 if overall == "down" else 200,
        headers=NO_CACHE,
        content={
            "status": overall,
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "latency_ms": round((time.perf_counter() - start) * 1000, 1),
            "version": APP_VERSION,
            "uptime_s": round(get_uptime_s(), 1),
            "components": components,
        },
    )


async def _bounded_check(name: str, coro) -> tuple[str, dict]:
    """Run a component check with a 2-second timeout."""
    try:
        result = await asyncio.wait_for(coro, timeout=COMPONENT_TIMEOUT)
        return name, result
    except asyncio.TimeoutError:
        return name, {"status": "down", "detail_safe": "Health check timed out"}
    except Exception as e:
        logger.warning("health_check_error", extra={"component": name, "error": str(e)})
        return name, {"status": "down", "detail_safe": f"Check failed: {type(e).__name__}"}


def _select_one() -> int:
    with get_engine().connect() as conn:
        return conn.execute(sa.text("SELECT 1")).scalar()


async def _check_database() -> dict:
    """Check the database with SELECT 1."""
    start = time.perf_counter()
    try:
        result = await asyncio.to_thread(_select_one)
        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        if result == 1:
            status = "degraded" if latency_ms > 250 else "ok"
        else:
            status = "down"
        return {"status": status, "latency_ms": latency_ms}
    except Exception as e:
        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        return {
            "status": "down",
            "latency_ms": latency_ms,
            "detail_safe": f"Query failed: {type(e).__name__}",
        }


async def _check_stripe() -> dict:
    """Stripe keys are configured (no network call)."""
    if not settings.stripe_secret_key:
        return {"status": "down", "detail_safe": "Missing API key"}
    if not settings.stripe_webhook_secret:
        return {"status": "degraded", "detail_safe": "Webhook secret not configured"}
    return {"status": "ok", "detail_safe": "Configured"}


async def _check_auth_provider() -> dict:
    """Auth provider URL and key are configured (no network call)."""
    if not settings.supabase_url or not settings.supabase_anon_key:
        return {"status": "down", "detail_safe": "Missing environment variables"}
    return {"status": "ok", "detail_safe": "Configured"}


async def _check_memory() -> dict:
    """Check available memory."""
    try:
        mem = psutil.virtual_memory()
        avail_pct = round(100.0 - mem.percent, 1)

        if avail_pct < 3:
            status = "down"
        elif avail_pct < 10:
            status = "degraded"
        else:
            status = "ok"

        return {"status": status, "avail_pct": avail_pct}
    except Exception as e:
        return {"status": "down", "detail_safe": f"Memory check failed: {type(e).__name__}"}
