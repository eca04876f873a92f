"""
FastAPI dependency providers.

Process-wide clients (Stripe gateway, rate limiter) are built once on first
use; request-scoped services are assembled around the request's DB session.
Tests swap any of them through ``app.dependency_overrides``.
"""

from typing import Optional

from fastapi import Depends
from sqlmodel import Session

from futureself.config import settings
from futureself.core.database import get_session, get_session_context
from futureself.services.billing_service import BillingService
from futureself.services.checkout_service import CheckoutService
from futureself.services.confirmation_service import ConfirmationService
from futureself.services.csrf_service import CsrfService
from futureself.services.entitlement_store import EntitlementStore
from futureself.services.rate_limiter import MemoryRateLimitStore, RateLimiter, SqlRateLimitStore
from futureself.services.reconciler import Reconciler
from futureself.services.stripe_gateway import StripeGateway, build_gateway
from futureself.services.webhook_service import WebhookProcessor

_gateway: Optional[StripeGateway] = None
_rate_limiter: Optional[RateLimiter] = None


def get_stripe_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        if settings.rate_limit_backend == "memory":
            store = MemoryRateLimitStore()
        else:
            store = SqlRateLimitStore(get_session_context)
        _rate_limiter = RateLimiter(store, fail_open=settings.rate_limit_fail_open)
    return _rate_limiter


def get_entitlement_store(session: Session = Depends(get_session)) -> EntitlementStore:
    return EntitlementStore(session, mirror_enabled=settings.legacy_mirror_enabled)


def get_reconciler(
    gateway: StripeGateway = Depends(get_stripe_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
) -> Reconciler:
    return Reconciler(gateway, store)


def get_checkout_service(
    gateway: StripeGateway = Depends(get_stripe_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
) -> CheckoutService:
    return CheckoutService(gateway, store)


def get_webhook_processor(
    reconciler: Reconciler = Depends(get_reconciler),
    store: EntitlementStore = Depends(get_entitlement_store),
) -> WebhookProcessor:
    return WebhookProcessor(
        reconciler,
        store,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_s=settings.stripe_webhook_tolerance_s,
    )


def get_confirmation_service(
    gateway: StripeGateway = Depends(get_stripe_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
    reconciler: Reconciler = Depends(get_reconciler),
) -> ConfirmationService:
    return ConfirmationService(gateway, store, reconciler)


def get_billing_service(
    gateway: StripeGateway = Depends(get_stripe_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
) -> BillingService:
    return BillingService(gateway, store)


def get_csrf_service(session: Session = Depends(get_session)) -> CsrfService:
    return CsrfService(session, ttl_s=settings.csrf_token_ttl_s)
