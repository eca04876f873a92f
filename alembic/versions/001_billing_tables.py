"""Billing customers, entitlements, orders, legacy mirror and replay-protection tables

Revision ID: 001_billing_tables
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_billing_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "billing_customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_billing_customers_user_id", "billing_customers", ["user_id"], unique=True)
    op.create_index("ix_billing_customers_customer_id", "billing_customers", ["customer_id"], unique=True)

    op.create_table(
        "entitlements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=True),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("plan_name", sa.String(length=128), nullable=True),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("payment_method_brand", sa.String(length=32), nullable=True),
        sa.Column("payment_method_last4", sa.String(length=4), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_entitlements_user_id", "entitlements", ["user_id"], unique=True)
    op.create_index("ix_entitlements_customer_id", "entitlements", ["customer_id"])

    op.create_table(
        "stripe_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("amount_subtotal", sa.Integer(), nullable=True),
        sa.Column("amount_total", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("payment_status", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_stripe_orders_checkout_session_id", "stripe_orders", ["checkout_session_id"], unique=True)
    op.create_index("ix_stripe_orders_customer_id", "stripe_orders", ["customer_id"])
    op.create_index("ix_stripe_orders_user_id", "stripe_orders", ["user_id"])

    op.create_table(
        "stripe_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("current_period_start", sa.Integer(), nullable=True),
        sa.Column("current_period_end", sa.Integer(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("payment_method_brand", sa.String(length=32), nullable=True),
        sa.Column("payment_method_last4", sa.String(length=4), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_stripe_subscriptions_customer_id", "stripe_subscriptions", ["customer_id"], unique=True)

    op.create_table(
        "csrf_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_csrf_tokens_user_id", "csrf_tokens", ["user_id"])
    op.create_index("ix_csrf_tokens_token_hash", "csrf_tokens", ["token_hash"])

    op.create_table(
        "rate_limit_hits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bucket", sa.String(length=64), nullable=False),
        sa.Column("identifier", sa.String(length=128), nullable=False),
        sa.Column("hit_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_rate_limit_hits_bucket", "rate_limit_hits", ["bucket"])
    op.create_index("ix_rate_limit_hits_identifier", "rate_limit_hits", ["identifier"])
    op.create_index("ix_rate_limit_hits_hit_at", "rate_limit_hits", ["hit_at"])


def downgrade() -> None:
    op.drop_table("rate_limit_hits")
    op.drop_table("csrf_tokens")
    op.drop_table("stripe_subscriptions")
    op.drop_table("stripe_orders")
    op.drop_table("entitlements")
    op.drop_table("billing_customers")
