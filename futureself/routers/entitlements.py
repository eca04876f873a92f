"""
Entitlement read model: what the client's route guards consult.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from futureself.auth.bearer_auth import AuthenticatedUser, get_current_user
from futureself.auth.guards import rate_limit
from futureself.core.async_utils import run_sync
from futureself.dependencies import get_entitlement_store
from futureself.models.billing import EntitlementStatus
from futureself.services.entitlement_store import EntitlementStore, as_utc, has_access

router = APIRouter()


class EntitlementResponse(BaseModel):
    user_id: str
    status: str
    has_access: bool
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    plan_name: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    payment_method_brand: Optional[str] = None
    payment_method_last4: Optional[str] = None


@router.get("/entitlements/me", response_model=EntitlementResponse, dependencies=[Depends(rate_limit("api"))])
async def get_my_entitlement(
    user: AuthenticatedUser = Depends(get_current_user),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    entitlement = await run_sync(store.get_entitlement, user.user_id)
    if entitlement is None:
        return EntitlementResponse(
            user_id=user.user_id,
            status=EntitlementStatus.NOT_STARTED.value,
            has_access=False,
        )
    return EntitlementResponse(
        user_id=entitlement.user_id,
        status=entitlement.status,
        has_access=has_access(entitlement),
        customer_id=entitlement.customer_id,
        subscription_id=entitlement.subscription_id,
        price_id=entitlement.price_id,
        plan_name=entitlement.plan_name,
        current_period_start=as_utc(entitlement.current_period_start),
        current_period_end=as_utc(entitlement.current_period_end),
        cancel_at_period_end=entitlement.cancel_at_period_end,
        payment_method_brand=entitlement.payment_method_brand,
        payment_method_last4=entitlement.payment_method_last4,
    )
