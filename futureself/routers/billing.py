"""
Billing Router
==============

GET  /api/prices          live monthly / yearly prices (auth optional)
GET  /api/stripe/config   publishable key for the browser SDK
POST /api/billing/portal  Stripe billing-portal session for the caller
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from futureself.auth.bearer_auth import AuthenticatedUser, get_current_user, get_optional_user
from futureself.auth.guards import rate_limit
from futureself.config import settings
from futureself.core.async_utils import run_sync
from futureself.dependencies import get_billing_service
from futureself.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter()


class PortalResponse(BaseModel):
    url: str


@router.get("/prices", summary="Current prices", dependencies=[Depends(rate_limit("api"))])
async def get_prices(
    _user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    billing: BillingService = Depends(get_billing_service),
):
    return await run_sync(billing.current_prices)


@router.get("/stripe/config", summary="Stripe publishable key")
async def get_stripe_config(_user: AuthenticatedUser = Depends(get_current_user)):
    return BillingService.publishable_config()


@router.post(
    "/billing/portal",
    response_model=PortalResponse,
    summary="Open the billing portal",
    dependencies=[Depends(rate_limit("api"))],
)
async def create_portal_session(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
):
    origin = request.headers.get("origin")
    if origin not in settings.cors_origins:
        origin = None
    url = await run_sync(billing.create_portal_session, user.user_id, origin)
    return PortalResponse(url=url)
