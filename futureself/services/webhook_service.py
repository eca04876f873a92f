"""
Stripe webhook processing.

``WebhookProcessor.verify`` checks the ``stripe-signature`` header over the
raw body before anything is parsed. ``WebhookProcessor.handle`` maps event
types onto reconciler calls:

    checkout.session.completed          link user → customer, then reconcile
                                        (subscription) or grant (payment)
    customer.subscription.created|updated|deleted   reconcile(customer)
    invoice.payment_succeeded|failed    reconcile(customer), subscription invoices only
    anything else                       ignored

Stripe delivers at least once; every write below is an upsert, so a
redelivered event rewrites identical values. Errors are not caught here:
they surface as a 500 and Stripe retries the delivery.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe

from futureself.core.errors import FutureSelfError
from futureself.services.entitlement_store import EntitlementStore
from futureself.services.reconciler import Reconciler
from futureself.services.stripe_gateway import from_timestamp, get_field, id_of

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})
INVOICE_EVENTS = frozenset({
    "invoice.payment_succeeded",
    "invoice.payment_failed",
})


def session_user_id(session: Any) -> Optional[str]:
    """The user a checkout session was opened for."""
    return get_field(session, "client_reference_id") or get_field(session, "metadata", "userId")


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    subscription = get_field(invoice, "subscription")
    if subscription is None:
        # Newer API versions nest it under parent.subscription_details.
        subscription = get_field(invoice, "parent", "subscription_details", "subscription")
    return id_of(subscription)


class WebhookProcessor:
    """Verifies and dispatches Stripe webhook events."""

    def __init__(
        self,
        reconciler: Reconciler,
        store: EntitlementStore,
        webhook_secret: Optional[str],
        tolerance_s: int = 300,
    ):
        self.reconciler = reconciler
        self.store = store
        self.webhook_secret = webhook_secret
        self.tolerance_s = tolerance_s

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Return the parsed event, or raise when the signature doesn't hold."""
        if not signature:
            raise FutureSelfError("FS-WHK-001")
        if not self.webhook_secret:
            logger.error("Webhook received but FUTURESELF_STRIPE_WEBHOOK_SECRET is not set")
            raise FutureSelfError("FS-WHK-002", detail="webhook secret not configured")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance_s)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise FutureSelfError("FS-WHK-002", detail=str(exc)) from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise FutureSelfError("FS-WHK-002", detail=f"invalid JSON payload: {exc}") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise FutureSelfError("FS-WHK-002", detail="payload is not a Stripe event")
        return event

    def handle(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        obj = get_field(event, "data", "object")
        logger.info("Processing webhook event %s (%s)", event.get("id"), event_type)

        if event_type == "checkout.session.completed":
            self.handle_checkout_completed(obj)
        elif event_type in SUBSCRIPTION_EVENTS:
            self.reconciler.reconcile(id_of(get_field(obj, "customer")))
        elif event_type in INVOICE_EVENTS:
            if invoice_subscription_id(obj):
                self.reconciler.reconcile(id_of(get_field(obj, "customer")))
            else:
                logger.info("Invoice %s is not tied to a subscription; ignoring", id_of(obj))
        else:
            logger.info("Unhandled webhook event type: %s", event_type)

    def handle_checkout_completed(self, session: Any) -> None:
        customer_id = id_of(get_field(session, "customer"))
        if not customer_id:
            raise FutureSelfError("FS-WHK-003", detail=f"checkout session {id_of(session)} has no customer")

        user_id = session_user_id(session)
        if user_id:
            self.store.link_customer(user_id, customer_id, get_field(session, "customer_details", "email"))
        else:
            logger.warning("Checkout session %s carries no user reference", id_of(session))

        mode = get_field(session, "mode")
        if mode == "subscription":
            self.reconciler.reconcile(customer_id)
        elif mode == "payment" and get_field(session, "payment_status") == "paid":
            record_one_time_purchase(self.reconciler, self.store, session, user_id, customer_id)
        else:
            logger.info(
                "Checkout session %s (mode=%s, payment_status=%s) needs no entitlement change",
                id_of(session), mode, get_field(session, "payment_status"),
            )


def session_price_id(session: Any) -> Optional[str]:
    price_id = get_field(session, "metadata", "priceId")
    if price_id:
        return price_id
    items = get_field(session, "line_items", "data") or []
    return id_of(get_field(items[0], "price")) if items else None


def record_one_time_purchase(
    reconciler: Reconciler,
    store: EntitlementStore,
    session: Any,
    user_id: Optional[str],
    customer_id: str,
) -> None:
    """Store the order row and, when the user is known, a time-boxed grant."""
    price_id = session_price_id(session)
    store.record_order(
        id_of(session),
        payment_intent_id=id_of(get_field(session, "payment_intent")),
        customer_id=customer_id,
        user_id=user_id,
        price_id=price_id,
        amount_subtotal=get_field(session, "amount_subtotal"),
        amount_total=get_field(session, "amount_total"),
        currency=get_field(session, "currency"),
        payment_status=get_field(session, "payment_status"),
    )
    if user_id:
        reconciler.grant_one_time(user_id, customer_id, price_id, from_timestamp(get_field(session, "created")))
