"""
Tests for the reconciler: status mapping, idempotence, inactive fallback,
one-time grants and the legacy mirror.
"""

from datetime import timedelta

import pytest
from sqlmodel import select

from futureself.models.billing import Entitlement, EntitlementStatus, SubscriptionMirror, utcnow
from futureself.services.entitlement_store import EntitlementStore, as_utc
from futureself.services.reconciler import (
    STRIPE_STATUS_MAP,
    Reconciler,
    map_stripe_status,
    plan_name_for,
)


@pytest.fixture
def store(db_session):
    return EntitlementStore(db_session, mirror_enabled=True)


@pytest.fixture
def reconciler(fake_stripe, store):
    return Reconciler(fake_stripe, store)


@pytest.fixture
def linked_customer(fake_stripe, store):
    customer = fake_stripe.add_customer("user1@example.com", "user-1")
    store.link_customer("user-1", customer["id"], "user1@example.com")
    return customer["id"]


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

class TestStatusMapping:
    @pytest.mark.parametrize(
        "stripe_status,expected",
        [
            ("active", EntitlementStatus.ACTIVE),
            ("trialing", EntitlementStatus.TRIALING),
            ("past_due", EntitlementStatus.PAST_DUE),
            ("canceled", EntitlementStatus.CANCELED),
            ("unpaid", EntitlementStatus.UNPAID),
            ("incomplete", EntitlementStatus.INCOMPLETE),
            ("incomplete_expired", EntitlementStatus.INCOMPLETE),
            ("paused", EntitlementStatus.INACTIVE),
        ],
    )
    def test_known_statuses(self, stripe_status, expected):
        assert map_stripe_status(stripe_status) is expected

    @pytest.mark.parametrize("stripe_status", ["something_new", "", None, "ACTIVE"])
    def test_unrecognized_maps_to_inactive(self, stripe_status):
        assert map_stripe_status(stripe_status) is EntitlementStatus.INACTIVE

    def test_every_mapped_value_is_an_entitlement_status(self):
        for value in STRIPE_STATUS_MAP.values():
            assert isinstance(value, EntitlementStatus)


class TestPlanNames:
    def test_interval_names(self):
        assert plan_name_for("price_x", "year") == "Pro Annual"
        assert plan_name_for("price_x", "month") == "Pro Monthly"
        assert plan_name_for("price_x") == "Pro"

    def test_configured_name_wins(self, monkeypatch):
        from futureself.config import settings

        monkeypatch.setattr(settings, "plan_names", {"price_gold": "Gold"})
        assert plan_name_for("price_gold", "month") == "Gold"


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------

class TestReconcile:
    def test_unlinked_customer_is_skipped(self, reconciler, fake_stripe):
        fake_stripe.add_price("price_monthly")
        fake_stripe.add_subscription("cus_unknown", "price_monthly")
        assert reconciler.reconcile("cus_unknown") is None

    def test_active_subscription_written(self, reconciler, fake_stripe, linked_customer):
        fake_stripe.add_price("price_monthly", interval="month")
        subscription = fake_stripe.add_subscription(linked_customer, "price_monthly")

        entitlement = reconciler.reconcile(linked_customer)

        assert entitlement.status == "active"
        assert entitlement.subscription_id == subscription["id"]
        assert entitlement.price_id == "price_monthly"
        assert entitlement.plan_name == "Pro Monthly"
        assert entitlement.payment_method_brand == "visa"
        assert entitlement.payment_method_last4 == "4242"
        assert int(as_utc(entitlement.current_period_end).timestamp()) == subscription["current_period_end"]

    def test_idempotent(self, reconciler, fake_stripe, linked_customer, db_session):
        fake_stripe.add_price("price_monthly")
        fake_stripe.add_subscription(linked_customer, "price_monthly")

        first = reconciler.reconcile(linked_customer)
        updated_at = first.updated_at
        period_end = first.current_period_end
        second = reconciler.reconcile(linked_customer)

        rows = db_session.exec(select(Entitlement).where(Entitlement.user_id == "user-1")).all()
        assert len(rows) == 1
        assert second.updated_at == updated_at
        assert second.current_period_end == period_end

    def test_status_change_updates_row(self, reconciler, fake_stripe, linked_customer):
        fake_stripe.add_price("price_monthly")
        subscription = fake_stripe.add_subscription(linked_customer, "price_monthly")
        reconciler.reconcile(linked_customer)

        subscription["status"] = "past_due"
        subscription["cancel_at_period_end"] = True
        entitlement = reconciler.reconcile(linked_customer)

        assert entitlement.status == "past_due"
        assert entitlement.cancel_at_period_end is True

    def test_no_subscription_sets_inactive(self, reconciler, fake_stripe, linked_customer, db_session):
        fake_stripe.add_price("price_monthly")
        fake_stripe.add_subscription(linked_customer, "price_monthly")
        reconciler.reconcile(linked_customer)

        del fake_stripe.subscriptions[linked_customer]
        entitlement = reconciler.reconcile(linked_customer)

        assert entitlement.status == "inactive"
        assert entitlement.subscription_id is None
        mirror = db_session.exec(
            select(SubscriptionMirror).where(SubscriptionMirror.customer_id == linked_customer)
        ).one()
        assert mirror.status == "not_started"

    def test_unknown_stripe_status_stored_as_inactive(self, reconciler, fake_stripe, linked_customer):
        fake_stripe.add_price("price_monthly")
        fake_stripe.add_subscription(linked_customer, "price_monthly", status="brand_new_status")
        assert reconciler.reconcile(linked_customer).status == "inactive"

    def test_period_read_from_subscription_item(self, reconciler, fake_stripe, linked_customer):
        fake_stripe.add_price("price_monthly")
        subscription = fake_stripe.add_subscription(linked_customer, "price_monthly")
        start = subscription.pop("current_period_start")
        end = subscription.pop("current_period_end")
        item = subscription["items"]["data"][0]
        item["current_period_start"] = start
        item["current_period_end"] = end

        entitlement = reconciler.reconcile(linked_customer)
        assert int(as_utc(entitlement.current_period_start).timestamp()) == start
        assert int(as_utc(entitlement.current_period_end).timestamp()) == end

    def test_mirror_written(self, reconciler, fake_stripe, linked_customer, db_session):
        fake_stripe.add_price("price_monthly")
        subscription = fake_stripe.add_subscription(linked_customer, "price_monthly", status="trialing")
        reconciler.reconcile(linked_customer)

        mirror = db_session.exec(
            select(SubscriptionMirror).where(SubscriptionMirror.customer_id == linked_customer)
        ).one()
        assert mirror.subscription_id == subscription["id"]
        assert mirror.status == "trialing"
        assert mirror.current_period_end == subscription["current_period_end"]

    def test_mirror_disabled(self, fake_stripe, db_session, linked_customer):
        reconciler = Reconciler(fake_stripe, EntitlementStore(db_session, mirror_enabled=False))
        fake_stripe.add_price("price_monthly")
        fake_stripe.add_subscription(linked_customer, "price_monthly")
        reconciler.reconcile(linked_customer)
        assert db_session.exec(select(SubscriptionMirror)).first() is None


# ---------------------------------------------------------------------------
# One-time grants
# ---------------------------------------------------------------------------

class TestOneTimeGrant:
    def test_grant_is_time_boxed(self, reconciler, linked_customer):
        granted_at = utcnow().replace(microsecond=0)
        entitlement = reconciler.grant_one_time("user-1", linked_customer, "price_once", granted_at)

        assert entitlement.status == "active"
        assert entitlement.subscription_id is None
        assert as_utc(entitlement.current_period_end) == granted_at + timedelta(days=30)

    def test_redelivery_writes_identical_values(self, reconciler, linked_customer):
        granted_at = utcnow().replace(microsecond=0)
        first = reconciler.grant_one_time("user-1", linked_customer, "price_once", granted_at)
        updated_at = first.updated_at
        second = reconciler.grant_one_time("user-1", linked_customer, "price_once", granted_at)
        assert second.updated_at == updated_at

    def test_reconcile_without_subscription_keeps_unexpired_grant(self, reconciler, linked_customer):
        reconciler.grant_one_time("user-1", linked_customer, "price_once", utcnow())
        entitlement = reconciler.reconcile(linked_customer)
        assert entitlement.status == "active"
