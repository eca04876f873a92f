"""
Post-payment confirmation endpoint.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from futureself.auth.bearer_auth import AuthenticatedUser, get_current_user
from futureself.auth.guards import rate_limit
from futureself.core.async_utils import run_sync
from futureself.dependencies import get_confirmation_service
from futureself.services.confirmation_service import ConfirmationService

logger = logging.getLogger(__name__)

router = APIRouter()


class ConfirmPaymentRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, max_length=255)
    userId: Optional[str] = None


class ConfirmPaymentResponse(BaseModel):
    success: bool
    sessionId: str
    amount: float
    plan: str
    status: str
    subscriptionId: Optional[str] = None
    customerId: Optional[str] = None


@router.post(
    "/payments/confirm",
    response_model=ConfirmPaymentResponse,
    summary="Confirm a completed checkout",
    dependencies=[Depends(rate_limit("api"))],
)
async def confirm_payment(
    body: ConfirmPaymentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    confirmation: ConfirmationService = Depends(get_confirmation_service),
):
    logger.info("Confirming payment for session %s and user %s", body.sessionId, user.user_id)
    return await run_sync(confirmation.confirm, body.sessionId, user.user_id, body.userId)
