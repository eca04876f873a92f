"""
Subscription reconciler.

Rewrites a user's Entitlement from the authoritative Stripe subscription.
Called by the webhook receiver, by post-payment confirmation and by checkout
completion. Running it twice against the same Stripe state leaves the row
untouched the second time.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from futureself.config import settings
from futureself.models.billing import Entitlement, EntitlementStatus, utcnow
from futureself.services.entitlement_store import EntitlementStore, as_utc
from futureself.services.stripe_gateway import StripeGateway, from_timestamp, get_field, id_of

logger = logging.getLogger(__name__)

# Every status Stripe documents for a subscription. Anything else → inactive.
STRIPE_STATUS_MAP: Dict[str, EntitlementStatus] = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.TRIALING,
    "past_due": EntitlementStatus.PAST_DUE,
    "canceled": EntitlementStatus.CANCELED,
    "unpaid": EntitlementStatus.UNPAID,
    "incomplete": EntitlementStatus.INCOMPLETE,
    "incomplete_expired": EntitlementStatus.INCOMPLETE,
    "paused": EntitlementStatus.INACTIVE,
}


def map_stripe_status(stripe_status: Optional[str]) -> EntitlementStatus:
    """Map a Stripe subscription status onto EntitlementStatus (total)."""
    mapped = STRIPE_STATUS_MAP.get(stripe_status or "")
    if mapped is None:
        logger.warning("Unrecognized Stripe subscription status %r, treating as inactive", stripe_status)
        return EntitlementStatus.INACTIVE
    return mapped


def plan_name_for(price_id: Optional[str], interval: Optional[str] = None) -> str:
    """Display name for a price: configured name first, then the billing interval."""
    if price_id and price_id in settings.plan_names:
        return settings.plan_names[price_id]
    if interval == "year":
        return f"{settings.default_plan_name} Annual"
    if interval == "month":
        return f"{settings.default_plan_name} Monthly"
    return settings.default_plan_name


def _first_item(subscription: Any) -> Any:
    items = get_field(subscription, "items", "data") or []
    return items[0] if items else None


def _period_bound(subscription: Any, key: str) -> Optional[int]:
    # Newer API versions moved the period onto the subscription item.
    value = get_field(subscription, key)
    if value is None:
        value = get_field(_first_item(subscription), key)
    return value


class Reconciler:
    """Derives Entitlement rows from Stripe subscription state."""

    def __init__(self, gateway: StripeGateway, store: EntitlementStore):
        self.gateway = gateway
        self.store = store

    def reconcile(self, customer_id: str) -> Optional[Entitlement]:
        """Re-read the customer's subscription from Stripe and upsert the entitlement.

        Returns None when the customer is not linked to any user yet; linkage
        can race with event delivery, so that case is a warning only.
        """
        user_id = self.store.get_user_id_for_customer(customer_id)
        if user_id is None:
            logger.warning("No user linked to Stripe customer %s; skipping reconcile", customer_id)
            return None

        subscription = self.gateway.latest_subscription(customer_id)
        if subscription is None:
            return self._clear_subscription(user_id, customer_id)

        return self.apply_subscription(user_id, customer_id, subscription)

    def apply_subscription(self, user_id: str, customer_id: str, subscription: Any) -> Entitlement:
        """Upsert the entitlement (and legacy mirror) from a subscription object."""
        item = _first_item(subscription)
        price = get_field(item, "price")
        price_id = id_of(price)
        interval = get_field(price, "recurring", "interval")
        status = map_stripe_status(get_field(subscription, "status"))

        period_start = _period_bound(subscription, "current_period_start")
        period_end = _period_bound(subscription, "current_period_end")
        cancel_at_period_end = bool(get_field(subscription, "cancel_at_period_end"))

        payment_method = get_field(subscription, "default_payment_method")
        brand = last4 = None
        if payment_method is not None and not isinstance(payment_method, str):
            brand = get_field(payment_method, "card", "brand")
            last4 = get_field(payment_method, "card", "last4")

        entitlement, changed = self.store.upsert_entitlement(
            user_id,
            customer_id=customer_id,
            subscription_id=id_of(subscription),
            status=status.value,
            price_id=price_id,
            plan_name=plan_name_for(price_id, interval),
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=cancel_at_period_end,
            payment_method_brand=brand,
            payment_method_last4=last4,
        )
        if not changed:
            logger.debug("Entitlement for user %s already matches subscription %s", user_id, id_of(subscription))

        self.store.mirror_subscription(
            customer_id,
            subscription_id=id_of(subscription),
            price_id=price_id,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            payment_method_brand=brand,
            payment_method_last4=last4,
            status=get_field(subscription, "status") or EntitlementStatus.INACTIVE.value,
        )
        return entitlement

    def grant_one_time(
        self,
        user_id: str,
        customer_id: str,
        price_id: Optional[str],
        granted_at: Optional[datetime] = None,
    ) -> Entitlement:
        """Write a time-boxed ``active`` entitlement for a one-time purchase.

        The period is anchored on *granted_at* (the checkout session's
        creation time) so redelivery writes identical values.
        """
        start = as_utc(granted_at) or utcnow()
        end = start + timedelta(days=settings.plan_duration_days(price_id))
        entitlement, _ = self.store.upsert_entitlement(
            user_id,
            customer_id=customer_id,
            subscription_id=None,
            status=EntitlementStatus.ACTIVE.value,
            price_id=price_id,
            plan_name=plan_name_for(price_id),
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=False,
        )
        return entitlement

    def _clear_subscription(self, user_id: str, customer_id: str) -> Entitlement:
        current = self.store.get_entitlement(user_id)
        if current is not None and current.subscription_id is None \
                and current.status == EntitlementStatus.ACTIVE.value \
                and current.current_period_end is not None \
                and as_utc(current.current_period_end) > utcnow():
            # Unexpired one-time grant; there was never a subscription to clear.
            return current

        entitlement, _ = self.store.upsert_entitlement(
            user_id,
            customer_id=customer_id,
            subscription_id=None,
            status=EntitlementStatus.INACTIVE.value,
        )
        self.store.mirror_subscription(
            customer_id,
            subscription_id=None,
            status=EntitlementStatus.NOT_STARTED.value,
        )
        logger.info("Customer %s has no subscription; entitlement for %s set inactive", customer_id, user_id)
        return entitlement
