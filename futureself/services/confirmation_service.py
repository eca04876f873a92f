"""
Post-payment confirmation.

The client calls this right after returning from Stripe Checkout, before the
webhook has necessarily arrived. The checkout session is re-read from Stripe
and the entitlement written from it. Ownership is checked before anything
else; entitlement write failures are logged and do not fail the response,
since the next webhook delivery rewrites the same row.
"""

import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError

from futureself.core.errors import FutureSelfError
from futureself.services.entitlement_store import EntitlementStore
from futureself.services.reconciler import Reconciler, plan_name_for
from futureself.services.stripe_gateway import StripeGateway, get_field, id_of
from futureself.services.webhook_service import record_one_time_purchase, session_price_id

logger = logging.getLogger(__name__)

CONFIRM_EXPAND = ["subscription", "subscription.default_payment_method", "payment_intent", "line_items"]


class ConfirmationService:
    def __init__(self, gateway: StripeGateway, store: EntitlementStore, reconciler: Reconciler):
        self.gateway = gateway
        self.store = store
        self.reconciler = reconciler

    def confirm(self, session_id: str, user_id: str, claimed_user_id: Optional[str] = None) -> Dict[str, Any]:
        if claimed_user_id and claimed_user_id != user_id:
            logger.warning("Confirmation user mismatch: body=%s caller=%s", claimed_user_id, user_id)
            raise FutureSelfError("FS-AUTH-003", detail="userId does not match caller")

        try:
            session = self.gateway.retrieve_checkout_session(session_id, expand=CONFIRM_EXPAND)
        except stripe.InvalidRequestError as exc:
            logger.warning("Checkout session %s could not be retrieved: %s", session_id, exc)
            raise FutureSelfError("FS-STR-002", detail=str(exc)) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe error retrieving session %s: %s", session_id, exc)
            raise FutureSelfError("FS-STR-001", detail=str(exc)) from exc

        if not _owned_by(session, user_id):
            logger.error("Session %s does not belong to user %s", session_id, user_id)
            raise FutureSelfError("FS-AUTH-003", detail=f"session {session_id} not owned by caller")

        payment_status = get_field(session, "payment_status")
        if payment_status != "paid":
            logger.info("Session %s payment status is %s", session_id, payment_status)
            raise FutureSelfError("FS-PAY-001", context={"payment_status": payment_status})

        price_id = session_price_id(session)
        line_items = get_field(session, "line_items", "data") or []
        interval = get_field(line_items[0], "price", "recurring", "interval") if line_items else None
        customer_id = id_of(get_field(session, "customer"))

        try:
            self._write_entitlement(session, user_id, customer_id)
        except (SQLAlchemyError, stripe.StripeError) as exc:
            logger.error("Entitlement write failed while confirming session %s: %s", session_id, exc)

        amount_total = get_field(session, "amount_total")
        return {
            "success": True,
            "sessionId": id_of(session),
            "amount": amount_total / 100 if amount_total else 0,
            "plan": plan_name_for(price_id, interval),
            "status": payment_status,
            "subscriptionId": id_of(get_field(session, "subscription")),
            "customerId": customer_id,
        }

    def _write_entitlement(self, session: Any, user_id: str, customer_id: Optional[str]) -> None:
        if not customer_id:
            logger.warning("Session %s has no customer; entitlement left to the webhook", id_of(session))
            return

        self.store.link_customer(user_id, customer_id, get_field(session, "customer_details", "email"))
        mode = get_field(session, "mode")
        if mode == "subscription":
            subscription = get_field(session, "subscription")
            if subscription is None:
                return
            if isinstance(subscription, str):
                subscription = self.gateway.retrieve_subscription(subscription)
            self.reconciler.apply_subscription(user_id, customer_id, subscription)
        elif mode == "payment":
            record_one_time_purchase(self.reconciler, self.store, session, user_id, customer_id)

    # ------------------------------------------------------------------
    # Read-only session summary
    # ------------------------------------------------------------------

    def describe_session(self, session_id: str, user_id: str) -> Dict[str, Any]:
        """Summary of a checkout session for the user who opened it."""
        try:
            session = self.gateway.retrieve_checkout_session(
                session_id, expand=["payment_intent", "subscription"]
            )
        except stripe.InvalidRequestError as exc:
            raise FutureSelfError("FS-STR-002", detail=str(exc)) from exc
        except stripe.StripeError as exc:
            raise FutureSelfError("FS-STR-001", detail=str(exc)) from exc

        if not _owned_by(session, user_id):
            raise FutureSelfError("FS-AUTH-003", detail=f"session {session_id} not owned by caller")

        subscription = get_field(session, "subscription")
        payment_intent = get_field(session, "payment_intent")
        return {
            "id": id_of(session),
            "status": get_field(session, "status"),
            "payment_status": get_field(session, "payment_status"),
            "customer_email": get_field(session, "customer_details", "email"),
            "customer_name": get_field(session, "customer_details", "name"),
            "amount_total": get_field(session, "amount_total"),
            "amount_subtotal": get_field(session, "amount_subtotal"),
            "currency": get_field(session, "currency"),
            "mode": get_field(session, "mode"),
            "created": get_field(session, "created"),
            "expires_at": get_field(session, "expires_at"),
            "subscription": _summary(subscription),
            "payment_intent": _summary(payment_intent),
        }


def _owned_by(session: Any, user_id: str) -> bool:
    return user_id in (get_field(session, "client_reference_id"), get_field(session, "metadata", "userId"))


def _summary(obj: Any) -> Optional[Dict[str, Any]]:
    if obj is None:
        return None
    return {
        "id": id_of(obj),
        "status": None if isinstance(obj, str) else get_field(obj, "status"),
    }
