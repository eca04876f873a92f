"""
Allow-list CORS middleware.

Every response echoes the request ``Origin`` when it is on the allow-list,
otherwise the first allowed origin, plus a fixed set of methods/headers.
``OPTIONS`` preflight requests are answered here with 204 and CORS headers
only; they never reach a route.
"""
from __future__ import annotations

from typing import Dict, List

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

ALLOWED_METHODS = "GET,POST,PUT,DELETE,OPTIONS"
ALLOWED_HEADERS = "authorization, x-client-info, apikey, content-type, x-csrf-token, stripe-signature"


def build_cors_headers(
    origin: str,
    allowed_origins: List[str],
    allow_credentials: bool = True,
) -> Dict[str, str]:
    """CORS headers for a request coming from *origin*."""
    if origin in allowed_origins:
        allow_origin = origin
    else:
        allow_origin = allowed_origins[0] if allowed_origins else ""

    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        "Vary": "Origin",
    }
    if allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


class OriginAllowListMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, allowed_origins: List[str], allow_credentials: bool = True):
        super().__init__(app)
        self.allowed_origins = list(allowed_origins)
        self.allow_credentials = allow_credentials

    async def dispatch(self, request: Request, call_next) -> Response:
        cors_headers = build_cors_headers(
            request.headers.get("origin", ""),
            self.allowed_origins,
            self.allow_credentials,
        )

        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors_headers)

        response = await call_next(request)
        for key, value in cors_headers.items():
            response.headers[key] = value
        return response
