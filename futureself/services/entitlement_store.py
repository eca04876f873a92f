"""
Entitlement Store
=================

Repository over the billing tables. Every write is an upsert keyed by a
stable identifier (user id for customers and entitlements, checkout session
id for orders, customer id for the legacy mirror), so replaying the same
provider state is harmless.

The legacy ``stripe_subscriptions`` mirror is secondary: its failures are
logged and swallowed, never raised.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from futureself.models.billing import (
    ACCESS_GRANTING_STATUSES,
    BillingCustomer,
    Entitlement,
    EntitlementStatus,
    StripeOrder,
    SubscriptionMirror,
    utcnow,
)

logger = logging.getLogger(__name__)

_ENTITLEMENT_FIELDS = (
    "customer_id",
    "subscription_id",
    "status",
    "price_id",
    "plan_name",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "payment_method_brand",
    "payment_method_last4",
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).replace(microsecond=0)
    if isinstance(value, EntitlementStatus):
        return value.value
    return value


def has_access(entitlement: Optional[Entitlement], now: Optional[datetime] = None) -> bool:
    """True when the entitlement grants access to gated features right now."""
    if entitlement is None or entitlement.status not in ACCESS_GRANTING_STATUSES:
        return False
    period_end = as_utc(entitlement.current_period_end)
    if entitlement.subscription_id is None and period_end is not None:
        # One-time grants expire on their own; subscriptions are kept current by webhooks.
        return period_end > (now or utcnow())
    return True


class EntitlementStore:
    """Reads and idempotent writes for customers, entitlements and orders."""

    def __init__(self, session: Session, mirror_enabled: bool = True):
        self.session = session
        self.mirror_enabled = mirror_enabled

    # ------------------------------------------------------------------
    # Billing customers
    # ------------------------------------------------------------------

    def get_customer_for_user(self, user_id: str) -> Optional[BillingCustomer]:
        stmt = select(BillingCustomer).where(
            BillingCustomer.user_id == user_id,
            BillingCustomer.deleted_at.is_(None),  # type: ignore[union-attr]
        )
        return self.session.exec(stmt).first()

    def get_user_id_for_customer(self, customer_id: str) -> Optional[str]:
        stmt = select(BillingCustomer).where(
            BillingCustomer.customer_id == customer_id,
            BillingCustomer.deleted_at.is_(None),  # type: ignore[union-attr]
        )
        row = self.session.exec(stmt).first()
        return row.user_id if row else None

    def link_customer(self, user_id: str, customer_id: str, email: Optional[str] = None) -> BillingCustomer:
        """Upsert the user → customer mapping."""
        try:
            return self._link_customer(user_id, customer_id, email)
        except IntegrityError:
            # A concurrent request inserted the same user first; update that row.
            self.session.rollback()
            return self._link_customer(user_id, customer_id, email)

    def retire_customer(self, user_id: str, customer_id: str) -> None:
        """Stamp ``deleted_at`` on the link once Stripe has deleted the customer."""
        row = self.session.exec(
            select(BillingCustomer).where(
                BillingCustomer.user_id == user_id,
                BillingCustomer.customer_id == customer_id,
            )
        ).first()
        if row is None or row.deleted_at is not None:
            return
        row.deleted_at = utcnow()
        row.updated_at = row.deleted_at
        self.session.add(row)
        self.session.commit()
        logger.info("Retired customer link %s for user %s", customer_id, user_id)

    def _link_customer(self, user_id: str, customer_id: str, email: Optional[str]) -> BillingCustomer:
        row = self.session.exec(select(BillingCustomer).where(BillingCustomer.user_id == user_id)).first()
        if row is None:
            row = self.session.exec(
                select(BillingCustomer).where(BillingCustomer.customer_id == customer_id)
            ).first()

        if row is not None and row.user_id == user_id and row.customer_id == customer_id \
                and row.deleted_at is None and (email is None or row.email == email):
            return row

        if row is None:
            row = BillingCustomer(user_id=user_id, customer_id=customer_id, email=email)
        else:
            if row.user_id != user_id:
                logger.warning(
                    "Customer %s re-linked from user %s to user %s", customer_id, row.user_id, user_id
                )
            row.user_id = user_id
            row.customer_id = customer_id
            row.email = email or row.email
            row.deleted_at = None
            row.updated_at = utcnow()

        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    def get_entitlement(self, user_id: str) -> Optional[Entitlement]:
        return self.session.exec(select(Entitlement).where(Entitlement.user_id == user_id)).first()

    def get_entitlement_for_customer(self, customer_id: str) -> Optional[Entitlement]:
        return self.session.exec(select(Entitlement).where(Entitlement.customer_id == customer_id)).first()

    def ensure_pending(self, user_id: str, customer_id: str) -> Entitlement:
        """Create a ``pending`` entitlement when the user has none yet."""
        existing = self.get_entitlement(user_id)
        if existing is not None:
            return existing
        entitlement, _ = self.upsert_entitlement(
            user_id, customer_id=customer_id, status=EntitlementStatus.PENDING.value
        )
        return entitlement

    def upsert_entitlement(self, user_id: str, **values: Any) -> Tuple[Entitlement, bool]:
        """Write *values* onto the user's entitlement row.

        Returns ``(entitlement, changed)``. When every value already matches
        the stored row nothing is written, so ``updated_at`` only moves on a
        real change.
        """
        unknown = set(values) - set(_ENTITLEMENT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown entitlement fields: {sorted(unknown)}")
        values = {k: _normalize(v) for k, v in values.items()}

        try:
            return self._upsert_entitlement(user_id, values)
        except IntegrityError:
            self.session.rollback()
            return self._upsert_entitlement(user_id, values)

    def _upsert_entitlement(self, user_id: str, values: Dict[str, Any]) -> Tuple[Entitlement, bool]:
        row = self.get_entitlement(user_id)
        if row is None:
            row = Entitlement(user_id=user_id, **values)
            self.session.add(row)
            self.session.commit()
            self.session.refresh(row)
            logger.info("Entitlement created: user=%s status=%s", user_id, row.status)
            return row, True

        changed = {
            key: value for key, value in values.items()
            if _normalize(getattr(row, key)) != value
        }
        if not changed:
            return row, False

        for key, value in changed.items():
            setattr(row, key, value)
        row.updated_at = utcnow()
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        logger.info(
            "Entitlement updated: user=%s status=%s fields=%s",
            user_id, row.status, ",".join(sorted(changed)),
        )
        return row, True

    # ------------------------------------------------------------------
    # One-time orders
    # ------------------------------------------------------------------

    def record_order(self, checkout_session_id: str, **values: Any) -> StripeOrder:
        """Insert the order once; redelivery of the same session is a no-op."""
        existing = self.session.exec(
            select(StripeOrder).where(StripeOrder.checkout_session_id == checkout_session_id)
        ).first()
        if existing is not None:
            return existing

        order = StripeOrder(checkout_session_id=checkout_session_id, **values)
        self.session.add(order)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return self.session.exec(
                select(StripeOrder).where(StripeOrder.checkout_session_id == checkout_session_id)
            ).one()
        self.session.refresh(order)
        logger.info("Order recorded: session=%s customer=%s", checkout_session_id, order.customer_id)
        return order

    # ------------------------------------------------------------------
    # Legacy mirror (best-effort)
    # ------------------------------------------------------------------

    def mirror_subscription(self, customer_id: str, **values: Any) -> None:
        if not self.mirror_enabled:
            return
        try:
            row = self.session.exec(
                select(SubscriptionMirror).where(SubscriptionMirror.customer_id == customer_id)
            ).first()
            if row is None:
                row = SubscriptionMirror(customer_id=customer_id)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            self.session.add(row)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning("Legacy subscription mirror write failed for %s: %s", customer_id, exc)
