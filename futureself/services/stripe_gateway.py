"""
Stripe Gateway
==============

PURPOSE:
    The only module that talks to the Stripe API. Services receive a
    ``StripeGateway`` instance instead of touching the ``stripe`` module, so
    tests can hand them a fake with the same methods.

    Every call passes ``api_key`` explicitly; nothing relies on the global
    ``stripe.api_key``. Callers read returned objects through ``get_field`` /
    ``id_of`` (item access), so plain dicts work too.

CONFIGURATION (env vars with FUTURESELF_ prefix):
    FUTURESELF_STRIPE_SECRET_KEY   Stripe secret API key
    FUTURESELF_STRIPE_APP_NAME     app name reported to Stripe
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from futureself.config import settings
from futureself.core.errors import FutureSelfError

logger = logging.getLogger(__name__)

__all__ = [
    "StripeGateway",
    "get_field",
    "id_of",
    "from_timestamp",
]

# Metadata key tying a Stripe customer back to the auth provider's user id
CUSTOMER_USER_METADATA_KEY = "supabase_user_id"


# ---------------------------------------------------------------------------
# Helpers for reading Stripe objects (or the plain dicts fakes return)
# ---------------------------------------------------------------------------

def get_field(obj: Any, *path: str) -> Any:
    """Walk *path* through nested Stripe objects, returning None on any gap."""
    current = obj
    for key in path:
        if current is None:
            return None
        try:
            current = current[key]
        except (KeyError, TypeError):
            return None
    return current


def id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return get_field(value, "id")


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeGateway:
    """Thin, injectable wrapper around the Stripe resources this service uses."""

    def __init__(self, api_key: Optional[str], app_name: str = "I Own My Future", app_version: str = "1.0.0"):
        self._api_key = api_key
        stripe.set_app_info(app_name, version=app_version)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _require_key(self) -> str:
        if not self._api_key:
            raise FutureSelfError("FS-CFG-001", detail="FUTURESELF_STRIPE_SECRET_KEY is not set")
        return self._api_key

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def retrieve_price(self, price_id: str):
        return stripe.Price.retrieve(price_id, api_key=self._require_key())

    def first_active_recurring_price(self, product_id: str):
        prices = stripe.Price.list(
            product=product_id,
            active=True,
            type="recurring",
            limit=1,
            api_key=self._require_key(),
        )
        data = list(prices.data)
        return data[0] if data else None

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def find_customer_by_email(self, email: str):
        customers = stripe.Customer.list(email=email, limit=1, api_key=self._require_key())
        data = list(customers.data)
        return data[0] if data else None

    def create_customer(self, email: str, user_id: str):
        customer = stripe.Customer.create(
            email=email,
            metadata={CUSTOMER_USER_METADATA_KEY: user_id},
            api_key=self._require_key(),
        )
        logger.info("Created Stripe customer %s for user %s", id_of(customer), user_id)
        return customer

    def update_customer_metadata(self, customer_id: str, metadata: Dict[str, str]):
        return stripe.Customer.modify(customer_id, metadata=metadata, api_key=self._require_key())

    def retrieve_customer(self, customer_id: str):
        return stripe.Customer.retrieve(customer_id, api_key=self._require_key())

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout_session(self, **params: Any):
        return stripe.checkout.Session.create(api_key=self._require_key(), **params)

    def retrieve_checkout_session(self, session_id: str, expand: Optional[List[str]] = None):
        return stripe.checkout.Session.retrieve(
            session_id,
            expand=expand or [],
            api_key=self._require_key(),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def latest_subscription(self, customer_id: str):
        """The customer's most recent subscription in any status, or None."""
        subscriptions = stripe.Subscription.list(
            customer=customer_id,
            limit=1,
            status="all",
            expand=["data.default_payment_method"],
            api_key=self._require_key(),
        )
        data = list(subscriptions.data)
        return data[0] if data else None

    def retrieve_subscription(self, subscription_id: str):
        return stripe.Subscription.retrieve(
            subscription_id,
            expand=["default_payment_method"],
            api_key=self._require_key(),
        )

    # ------------------------------------------------------------------
    # Billing portal
    # ------------------------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str):
        return stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
            api_key=self._require_key(),
        )


def build_gateway() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key, app_name=settings.stripe_app_name)
