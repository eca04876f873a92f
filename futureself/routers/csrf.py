"""
CSRF token endpoints.

GET  /api/csrf-token           issue a fresh single-use token
POST /api/csrf-token/validate  consume a token (header or body)
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from futureself.auth.bearer_auth import AuthenticatedUser, get_current_user
from futureself.auth.guards import csrf_token_from, enforce_csrf, get_client_ip, rate_limit
from futureself.core.async_utils import run_sync
from futureself.dependencies import get_csrf_service
from futureself.services.csrf_service import CsrfService

router = APIRouter()


class CsrfTokenResponse(BaseModel):
    csrfToken: str
    expiresAt: datetime


class CsrfValidateRequest(BaseModel):
    csrf_token: Optional[str] = None


@router.get("/csrf-token", response_model=CsrfTokenResponse, dependencies=[Depends(rate_limit("api"))])
async def issue_csrf_token(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    csrf: CsrfService = Depends(get_csrf_service),
):
    token, expires_at = await run_sync(csrf.issue, user.user_id, get_client_ip(request))
    return CsrfTokenResponse(csrfToken=token, expiresAt=expires_at)


@router.post("/csrf-token/validate", dependencies=[Depends(rate_limit("api"))])
async def validate_csrf_token(
    request: Request,
    body: Optional[CsrfValidateRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    csrf: CsrfService = Depends(get_csrf_service),
):
    await enforce_csrf(csrf, user.user_id, csrf_token_from(request, body.csrf_token if body else None))
    return {"valid": True}
