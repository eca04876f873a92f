"""
Checkout Router
===============

POST /api/checkout                          open a Stripe Checkout session
GET  /api/checkout/sessions/{session_id}    summary of the caller's session
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, HttpUrl

from futureself.auth.bearer_auth import AuthenticatedUser, get_current_user
from futureself.auth.guards import csrf_token_from, enforce_csrf, rate_limit
from futureself.config import settings
from futureself.core.async_utils import run_sync
from futureself.dependencies import get_checkout_service, get_confirmation_service, get_csrf_service
from futureself.services.checkout_service import CheckoutService
from futureself.services.confirmation_service import ConfirmationService
from futureself.services.csrf_service import CsrfService

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1, max_length=255)
    success_url: HttpUrl
    cancel_url: HttpUrl
    mode: Literal["payment", "subscription"]
    csrf_token: Optional[str] = None


class CheckoutResponse(BaseModel):
    sessionId: str
    url: str


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Create a checkout session",
    dependencies=[Depends(rate_limit("checkout"))],
)
async def create_checkout(
    body: CheckoutRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    checkout: CheckoutService = Depends(get_checkout_service),
    csrf: CsrfService = Depends(get_csrf_service),
):
    if settings.checkout_requires_csrf:
        await enforce_csrf(csrf, user.user_id, csrf_token_from(request, body.csrf_token))

    result = await run_sync(
        checkout.create_checkout,
        user.user_id,
        user.email,
        body.price_id,
        str(body.success_url),
        str(body.cancel_url),
        body.mode,
    )
    return CheckoutResponse(sessionId=result.session_id, url=result.url)


@router.get(
    "/checkout/sessions/{session_id}",
    summary="Checkout session details",
    dependencies=[Depends(rate_limit("api"))],
)
async def get_checkout_session(
    session_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    confirmation: ConfirmationService = Depends(get_confirmation_service),
):
    return await run_sync(confirmation.describe_session, session_id, user.user_id)
