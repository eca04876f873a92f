"""
Billing Service
===============

Read-side Stripe operations for the pricing and account pages:
    - live monthly / yearly price lookup (no caching; Stripe is the source)
    - billing-portal sessions for an existing customer
    - publishable key for the browser SDK
"""

import logging
from typing import Any, Dict, Optional

import stripe

from futureself.config import settings
from futureself.core.errors import FutureSelfError
from futureself.services.entitlement_store import EntitlementStore
from futureself.services.stripe_gateway import StripeGateway, get_field, id_of

logger = logging.getLogger(__name__)


def _price_payload(price: Any, product_id: str) -> Dict[str, Any]:
    return {
        "priceId": id_of(price),
        "productId": product_id,
        "amount": get_field(price, "unit_amount"),
        "currency": get_field(price, "currency"),
        "interval": get_field(price, "recurring", "interval"),
    }


class BillingService:
    def __init__(self, gateway: StripeGateway, store: Optional[EntitlementStore] = None):
        self.gateway = gateway
        self.store = store

    def current_prices(self) -> Dict[str, Dict[str, Any]]:
        """Active recurring price for the monthly and yearly products."""
        try:
            monthly = self.gateway.first_active_recurring_price(settings.monthly_product_id)
            yearly = self.gateway.first_active_recurring_price(settings.yearly_product_id)
        except stripe.StripeError as exc:
            logger.error("Price lookup failed: %s", exc)
            raise FutureSelfError("FS-STR-001", detail=str(exc)) from exc

        if monthly is None or yearly is None:
            logger.error(
                "Missing prices: monthly=%s yearly=%s", id_of(monthly), id_of(yearly)
            )
            raise FutureSelfError("FS-CFG-002")

        return {
            "monthly": _price_payload(monthly, settings.monthly_product_id),
            "yearly": _price_payload(yearly, settings.yearly_product_id),
        }

    def create_portal_session(self, user_id: str, origin: Optional[str] = None) -> str:
        """Billing-portal URL for the caller's Stripe customer."""
        link = self.store.get_customer_for_user(user_id) if self.store else None
        if link is None:
            raise FutureSelfError("FS-SUB-002", detail=f"no billing customer for user {user_id}")

        return_url = f"{(origin or settings.site_url).rstrip('/')}/profile"
        try:
            session = self.gateway.create_portal_session(link.customer_id, return_url)
        except stripe.StripeError as exc:
            logger.error("Billing portal session failed for %s: %s", link.customer_id, exc)
            raise FutureSelfError("FS-STR-001", detail=str(exc)) from exc
        return get_field(session, "url")

    @staticmethod
    def publishable_config() -> Dict[str, Optional[str]]:
        if not settings.stripe_publishable_key:
            raise FutureSelfError("FS-CFG-001", detail="FUTURESELF_STRIPE_PUBLISHABLE_KEY is not set")
        return {"publishableKey": settings.stripe_publishable_key}
