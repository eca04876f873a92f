"""
Checkout Service
================

Opens Stripe Checkout sessions for authenticated users.

Flow:
    1. Validate the price: it must exist, be active, and its type must match
       the checkout mode (recurring ⇔ subscription, one_time ⇔ payment).
    2. Resolve the user's Stripe customer: the stored link while Stripe still
       has it, else by email, else a new one. Persist the user → customer link.
    3. Refuse a second subscription when the stored entitlement is already
       active or trialing; otherwise seed a ``pending`` entitlement.
    4. Create the session with ``client_reference_id`` and ``metadata`` naming
       the user, so the webhook can attribute the payment without a lookup.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from futureself.core.errors import FutureSelfError
from futureself.models.billing import ACCESS_GRANTING_STATUSES
from futureself.services.entitlement_store import EntitlementStore
from futureself.services.stripe_gateway import (
    CUSTOMER_USER_METADATA_KEY,
    StripeGateway,
    get_field,
    id_of,
)

logger = logging.getLogger(__name__)

PRICE_TYPE_FOR_MODE = {
    "subscription": "recurring",
    "payment": "one_time",
}


@dataclass
class CheckoutResult:
    session_id: str
    url: str
    customer_id: str


class CheckoutService:
    """Validates prices, resolves customers and creates checkout sessions."""

    def __init__(self, gateway: StripeGateway, store: EntitlementStore):
        self.gateway = gateway
        self.store = store

    def create_checkout(
        self,
        user_id: str,
        email: Optional[str],
        price_id: str,
        success_url: str,
        cancel_url: str,
        mode: str,
    ) -> CheckoutResult:
        if mode not in PRICE_TYPE_FOR_MODE:
            raise FutureSelfError("FS-VAL-001", detail=f"unsupported checkout mode {mode!r}")

        self.validate_price(price_id, mode)
        customer_id = self.resolve_customer(user_id, email)

        if mode == "subscription":
            self._guard_duplicate_subscription(user_id, customer_id)

        try:
            session = self.gateway.create_checkout_session(
                customer=customer_id,
                client_reference_id=user_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode=mode,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"userId": user_id, "priceId": price_id},
            )
        except stripe.InvalidRequestError as exc:
            logger.error("Stripe rejected checkout session for user %s: %s", user_id, exc)
            raise FutureSelfError("FS-STR-002", detail=str(exc)) from exc
        except stripe.StripeError as exc:
            logger.error("Checkout session creation failed for user %s: %s", user_id, exc)
            raise FutureSelfError("FS-STR-001", detail=str(exc)) from exc

        session_id = id_of(session)
        url = get_field(session, "url")
        if not url:
            logger.error("Checkout session %s created without a URL", session_id)
            raise FutureSelfError("FS-STR-003", detail=f"session {session_id} has no url")

        logger.info(
            "Checkout session created: session=%s user=%s mode=%s price=%s",
            session_id, user_id, mode, price_id,
        )
        return CheckoutResult(session_id=session_id, url=url, customer_id=customer_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def validate_price(self, price_id: str, mode: str):
        """Return the Stripe price, or raise when it can't be used for *mode*."""
        try:
            price = self.gateway.retrieve_price(price_id)
        except stripe.StripeError as exc:
            logger.warning("Price %s could not be retrieved: %s", price_id, exc)
            raise FutureSelfError("FS-PRC-001", detail=str(exc)) from exc

        if not get_field(price, "active"):
            logger.warning("Attempted checkout with inactive price %s", price_id)
            raise FutureSelfError("FS-PRC-001", detail=f"price {price_id} is inactive")

        expected = PRICE_TYPE_FOR_MODE[mode]
        actual = get_field(price, "type")
        if actual != expected:
            logger.warning("Price type mismatch for %s: expected %s, got %s", price_id, expected, actual)
            raise FutureSelfError(
                "FS-PRC-002",
                detail=f"expected {expected}, got {actual}",
                context={"price_id": price_id, "mode": mode},
            )
        return price

    def resolve_customer(self, user_id: str, email: Optional[str]) -> str:
        """Find or create the user's Stripe customer and persist the link.

        A linked customer that Stripe reports deleted (or no longer knows)
        is retired and resolution falls through to the email lookup, so the
        user gets a fresh customer instead of a permanent refusal.

        Concurrent first checkouts may each create a customer; that is
        tolerated because reconciliation keys off the subscription.
        """
        try:
            linked = self._linked_customer(user_id)
            customer = linked
            if customer is None and email:
                customer = self.gateway.find_customer_by_email(email)

            if customer is not None:
                owner = get_field(customer, "metadata", CUSTOMER_USER_METADATA_KEY)
                if owner and owner != user_id:
                    logger.error("Customer %s does not belong to user %s", id_of(customer), user_id)
                    raise FutureSelfError("FS-AUTH-003", detail=f"customer {id_of(customer)} owned by another user")
                if not owner:
                    logger.info("Tagging customer %s with user %s", id_of(customer), user_id)
                    self.gateway.update_customer_metadata(
                        id_of(customer), {CUSTOMER_USER_METADATA_KEY: user_id}
                    )
                if customer is not linked:
                    customer = self.gateway.retrieve_customer(id_of(customer))
            else:
                customer = self.gateway.create_customer(email or "", user_id)
        except stripe.StripeError as exc:
            logger.error("Customer resolution failed for user %s: %s", user_id, exc)
            raise FutureSelfError("FS-STR-001", detail=str(exc)) from exc

        customer_id = id_of(customer)
        if get_field(customer, "deleted"):
            logger.error("Attempted to use deleted customer %s", customer_id)
            raise FutureSelfError("FS-CUS-001", detail=f"customer {customer_id} is deleted")

        self.store.link_customer(user_id, customer_id, email)
        return customer_id

    def _linked_customer(self, user_id: str):
        """The stored customer for *user_id*, or None once Stripe has dropped it."""
        linked = self.store.get_customer_for_user(user_id)
        if linked is None:
            return None
        try:
            customer = self.gateway.retrieve_customer(linked.customer_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) != "resource_missing":
                raise
            customer = None
        if customer is None or get_field(customer, "deleted"):
            logger.warning(
                "Linked customer %s for user %s no longer exists in Stripe, retiring the link",
                linked.customer_id, user_id,
            )
            self.store.retire_customer(user_id, linked.customer_id)
            return None
        return customer

    def _guard_duplicate_subscription(self, user_id: str, customer_id: str) -> None:
        entitlement = self.store.get_entitlement(user_id) or self.store.get_entitlement_for_customer(customer_id)
        if entitlement is not None and entitlement.subscription_id and \
                entitlement.status in ACCESS_GRANTING_STATUSES:
            logger.warning(
                "User %s attempted a new subscription while %s", user_id, entitlement.status
            )
            raise FutureSelfError("FS-SUB-001", context={"status": entitlement.status})
        if entitlement is None:
            self.store.ensure_pending(user_id, customer_id)
