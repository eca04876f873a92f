"""
Pytest configuration for futureself-billing tests.
Sets environment variables before any application import.
"""

import hashlib
import hmac
import itertools
import json
import os
import tempfile
import time

# Must be set before any futureself import: settings and the engine read them at import time
_test_data_dir = tempfile.mkdtemp(prefix="futureself_test_")
os.environ["FUTURESELF_ENVIRONMENT"] = "development"
os.environ["FUTURESELF_DATA_DIRECTORY"] = _test_data_dir
os.environ["FUTURESELF_STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["FUTURESELF_STRIPE_PUBLISHABLE_KEY"] = "pk_test_dummy"
os.environ["FUTURESELF_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["FUTURESELF_SUPABASE_URL"] = "https://auth.example.test"
os.environ["FUTURESELF_SUPABASE_ANON_KEY"] = "anon_test_key"
os.environ["FUTURESELF_RATE_LIMIT_BACKEND"] = "memory"
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from futureself.core.database import get_engine
from futureself.models import billing, security  # noqa: F401

# Ensure DB tables exist for all tests (create via SQLModel metadata)
SQLModel.metadata.create_all(get_engine())

# Load error registry so FutureSelfError returns correct HTTP status codes
from futureself.core.errors.registry import error_registry
error_registry.load()

from futureself.auth.bearer_auth import AuthenticatedUser, get_current_user, get_optional_user
from futureself.dependencies import get_rate_limiter, get_stripe_gateway
from futureself.main import app
from futureself.services.rate_limiter import MemoryRateLimitStore, RateLimiter

WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway; objects are plain dicts."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.prices: dict = {}
        self.customers: dict = {}
        self.sessions: dict = {}
        self.subscriptions: dict = {}  # customer id -> latest subscription
        self.products: dict = {}  # product id -> active recurring price
        self.created_sessions: list = []
        self.portal_sessions: list = []
        self.configured = True

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_test_{next(self._ids)}"

    # Prices
    def add_price(self, price_id, type_="recurring", active=True, interval="month", unit_amount=1800, product=None):
        price = {
            "id": price_id,
            "object": "price",
            "active": active,
            "type": type_,
            "unit_amount": unit_amount,
            "currency": "usd",
            "product": product,
            "recurring": {"interval": interval} if type_ == "recurring" else None,
        }
        self.prices[price_id] = price
        if product and active and type_ == "recurring":
            self.products[product] = price
        return price

    def retrieve_price(self, price_id):
        if price_id not in self.prices:
            raise stripe.InvalidRequestError(f"No such price: '{price_id}'", "id")
        return self.prices[price_id]

    def first_active_recurring_price(self, product_id):
        return self.products.get(product_id)

    # Customers
    def add_customer(self, email, user_id=None, deleted=False):
        customer_id = self._next_id("cus")
        self.customers[customer_id] = {
            "id": customer_id,
            "email": email,
            "deleted": deleted,
            "metadata": {"supabase_user_id": user_id} if user_id else {},
        }
        return self.customers[customer_id]

    def find_customer_by_email(self, email):
        # Stripe's customer list never includes deleted customers
        for customer in self.customers.values():
            if customer["email"] == email and not customer["deleted"]:
                return customer
        return None

    def create_customer(self, email, user_id):
        return self.add_customer(email, user_id)

    def delete_customer(self, customer_id):
        self.customers[customer_id]["deleted"] = True

    def update_customer_metadata(self, customer_id, metadata):
        self.customers[customer_id]["metadata"].update(metadata)
        return self.customers[customer_id]

    def retrieve_customer(self, customer_id):
        if customer_id not in self.customers:
            raise stripe.InvalidRequestError(
                f"No such customer: '{customer_id}'", "id", code="resource_missing"
            )
        customer = self.customers[customer_id]
        if customer["deleted"]:
            return {"id": customer_id, "object": "customer", "deleted": True}
        return customer

    # Checkout
    def create_checkout_session(self, **params):
        session_id = self._next_id("cs")
        session = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.test/{session_id}",
            "customer": params.get("customer"),
            "client_reference_id": params.get("client_reference_id"),
            "metadata": dict(params.get("metadata") or {}),
            "mode": params.get("mode"),
            "payment_status": "unpaid",
            "status": "open",
            "subscription": None,
            "payment_intent": None,
            "amount_subtotal": 1800,
            "amount_total": 1800,
            "currency": "usd",
            "created": int(time.time()),
            "line_items": {"data": [{"price": self.prices.get(params["line_items"][0]["price"])}]},
        }
        self.sessions[session_id] = session
        self.created_sessions.append(params)
        return session

    def retrieve_checkout_session(self, session_id, expand=None):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return self.sessions[session_id]

    # Subscriptions
    def add_subscription(self, customer_id, price_id, status="active", cancel_at_period_end=False):
        now = int(time.time())
        subscription = {
            "id": self._next_id("sub"),
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": now,
            "current_period_end": now + 30 * 24 * 3600,
            "default_payment_method": {"id": "pm_test", "card": {"brand": "visa", "last4": "4242"}},
            "items": {"data": [{"price": self.prices.get(price_id) or {"id": price_id}}]},
        }
        self.subscriptions[customer_id] = subscription
        return subscription

    def latest_subscription(self, customer_id):
        return self.subscriptions.get(customer_id)

    def retrieve_subscription(self, subscription_id):
        for subscription in self.subscriptions.values():
            if subscription["id"] == subscription_id:
                return subscription
        raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id")

    # Billing portal
    def create_portal_session(self, customer_id, return_url):
        self.portal_sessions.append((customer_id, return_url))
        return {"id": self._next_id("bps"), "url": f"https://billing.stripe.test/{customer_id}"}


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture(autouse=True)
def clean_db():
    """Empty every table after each test."""
    yield
    with Session(get_engine()) as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.connection().execute(table.delete())
        session.commit()


@pytest.fixture
def db_session():
    with Session(get_engine()) as session:
        yield session


@pytest.fixture
def fake_stripe():
    return FakeStripeGateway()


@pytest.fixture
def rate_limiter():
    return RateLimiter(MemoryRateLimitStore(), fail_open=True)


@pytest.fixture
def client(fake_stripe, rate_limiter):
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_stripe
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def as_user(client):
    """Authenticate subsequent requests as the given user."""
    def _login(user_id: str = "user-1", email: str = "user1@example.com") -> AuthenticatedUser:
        user = AuthenticatedUser(user_id=user_id, email=email, role="authenticated")
        app.dependency_overrides[get_current_user] = lambda: user
        app.dependency_overrides[get_optional_user] = lambda: user
        return user
    return _login


@pytest.fixture
def stripe_signature():
    return sign_payload


@pytest.fixture
def webhook_post(client):
    """POST a signed Stripe event to the webhook endpoint."""
    def _post(event: dict, secret: str = WEBHOOK_SECRET, signature: str | None = None):
        payload = json.dumps(event)
        header = signature if signature is not None else sign_payload(payload, secret)
        return client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )
    return _post
