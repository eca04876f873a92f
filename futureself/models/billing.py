"""
Billing Models
==============

SQLModel tables for persistent billing state:
- BillingCustomer: one Stripe customer per application user.
- Entitlement: the user's current access grant (one row per user).
- StripeOrder: paid one-time checkout sessions.
- SubscriptionMirror: legacy per-customer copy of the raw Stripe subscription
  state (``stripe_subscriptions``), written best-effort.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"
    INACTIVE = "inactive"
    NOT_STARTED = "not_started"
    PENDING = "pending"


ACCESS_GRANTING_STATUSES = frozenset({EntitlementStatus.ACTIVE.value, EntitlementStatus.TRIALING.value})


class BillingCustomer(SQLModel, table=True):
    """Maps an application user to a Stripe customer."""

    __tablename__ = "billing_customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True, max_length=128)
    customer_id: str = Field(unique=True, index=True, max_length=255)
    email: Optional[str] = Field(default=None, max_length=320)
    deleted_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Entitlement(SQLModel, table=True):
    """The user's current access grant, derived from Stripe state."""

    __tablename__ = "entitlements"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True, max_length=128)
    customer_id: Optional[str] = Field(default=None, index=True, max_length=255)
    subscription_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    status: str = Field(default=EntitlementStatus.NOT_STARTED.value, max_length=32)
    price_id: Optional[str] = Field(default=None, max_length=255)
    plan_name: Optional[str] = Field(default=None, max_length=128)
    current_period_start: Optional[datetime] = Field(default=None, nullable=True)
    current_period_end: Optional[datetime] = Field(default=None, nullable=True)
    cancel_at_period_end: bool = Field(default=False)
    payment_method_brand: Optional[str] = Field(default=None, max_length=32)
    payment_method_last4: Optional[str] = Field(default=None, max_length=4)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StripeOrder(SQLModel, table=True):
    """A paid one-time checkout session."""

    __tablename__ = "stripe_orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    checkout_session_id: str = Field(unique=True, index=True, max_length=255)
    payment_intent_id: Optional[str] = Field(default=None, max_length=255)
    customer_id: str = Field(index=True, max_length=255)
    user_id: Optional[str] = Field(default=None, index=True, max_length=128)
    price_id: Optional[str] = Field(default=None, max_length=255)
    amount_subtotal: Optional[int] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = Field(default=None, max_length=8)
    payment_status: str = Field(max_length=32)
    status: str = Field(default="completed", max_length=32)
    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionMirror(SQLModel, table=True):
    """Raw Stripe subscription state per customer (legacy ``stripe_subscriptions``)."""

    __tablename__ = "stripe_subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: str = Field(unique=True, index=True, max_length=255)
    subscription_id: Optional[str] = Field(default=None, max_length=255)
    price_id: Optional[str] = Field(default=None, max_length=255)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = Field(default=False)
    payment_method_brand: Optional[str] = Field(default=None, max_length=32)
    payment_method_last4: Optional[str] = Field(default=None, max_length=4)
    status: str = Field(default=EntitlementStatus.NOT_STARTED.value, max_length=32)
    updated_at: datetime = Field(default_factory=utcnow)
