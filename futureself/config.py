"""
futureself-billing Application Configuration
==============================================

PURPOSE:
    Pydantic-Settings based configuration for the billing backend.
    All settings can be overridden via environment variables (FUTURESELF_ prefix)
    or a local .env file.

SECTIONS:
    - Runtime (environment, debug, data directory)
    - Auth provider (Supabase GoTrue) used to validate bearer tokens
    - Stripe keys, product ids, plan naming and one-time access durations
    - CORS allow-list
    - CSRF and rate limiting (including the fail-open policy switch)
"""

import logging
import os
from typing import Dict, List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_PRODUCTION_ORIGINS = [
    "https://iownmyfuture.ai",
    "https://www.iownmyfuture.ai",
]
_DEVELOPMENT_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]


class Settings(BaseSettings):
    """Billing backend settings."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="FUTURESELF_", extra="ignore")

    app_name: str = "futureself-billing"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # Bearer-token validation against the auth provider
    auth_enabled: bool = True
    auth_cache_ttl: int = 60  # seconds
    supabase_url: str = ""
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_s: int = 300
    stripe_app_name: str = "I Own My Future"

    # Products shown on the pricing page (live prices are looked up per request)
    monthly_product_id: str = "prod_SlmIZrU6E29IYr"
    yearly_product_id: str = "prod_SlmIrtY1LuVNsA"

    # price_id -> display name; unknown prices are named from their interval
    plan_names: Dict[str, str] = {}
    default_plan_name: str = "Pro"

    # One-time purchases grant a time-boxed entitlement
    one_time_access_days: int = 30
    one_time_plan_durations: Dict[str, int] = {}

    # Site / CORS
    site_url: str = "https://iownmyfuture.ai"
    allowed_origins: List[str] = list(_PRODUCTION_ORIGINS)

    # CSRF
    checkout_requires_csrf: bool = False
    csrf_token_ttl_s: int = 24 * 60 * 60

    # Rate limiting
    rate_limit_backend: Literal["sql", "memory"] = "sql"
    # When true a failing limiter store lets requests through.
    rate_limit_fail_open: bool = True
    api_rate_limit_max_requests: int = 100
    api_rate_limit_window_s: int = 60 * 60
    checkout_rate_limit_max_requests: int = 10
    checkout_rate_limit_window_s: int = 60 * 60
    anonymous_rate_limit_max_requests: int = 100
    anonymous_rate_limit_window_s: int = 60 * 60

    # Legacy per-customer mirror table (stripe_subscriptions)
    legacy_mirror_enabled: bool = True

    # Storage
    data_directory: str = "/data"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Allow-list with localhost origins added outside production."""
        origins = list(self.allowed_origins)
        if not self.is_production:
            for origin in _DEVELOPMENT_ORIGINS:
                if origin not in origins:
                    origins.append(origin)
        return origins

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    def plan_duration_days(self, price_id: Optional[str]) -> int:
        if price_id and price_id in self.one_time_plan_durations:
            return self.one_time_plan_durations[price_id]
        return self.one_time_access_days


settings = Settings()

if settings.is_production and not settings.stripe_webhook_secret:
    logger.warning(
        "FUTURESELF_STRIPE_WEBHOOK_SECRET not set in production; "
        "every webhook delivery will be rejected."
    )

logger.info(
    "futureself-billing environment: %s (pid=%s)", settings.environment, os.getpid()
)
