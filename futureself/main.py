from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from futureself.config import settings
from futureself.routers import billing, checkout, csrf, entitlements, health, payments, webhooks
from futureself.auth.bearer_auth import close_http_client
from futureself.core.cors import OriginAllowListMiddleware
from futureself.core.database import init_db, close_db
from futureself.core.structured_logging import APP_VERSION, setup_logging
from futureself.core.errors import FutureSelfError
from futureself.core.errors.registry import error_registry
from futureself.core.errors.middleware import futureself_error_handler, request_validation_handler
from futureself.core.log_middleware import CorrelationMiddleware

# Initialize structured logging before any logger calls
setup_logging()

logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "I Own My Future Billing API"

API_DESCRIPTION = """
## I Own My Future - Billing & Entitlements

Stripe checkout, webhook reconciliation and the entitlement read model
behind the journaling and vision-board app.

### Authentication

User endpoints require the auth provider's access token:
`Authorization: Bearer <jwt>`.
The Stripe webhook is authenticated by its `stripe-signature` header only.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and dependency checks"},
    {"name": "checkout", "description": "Checkout sessions and post-payment confirmation"},
    {"name": "billing", "description": "Prices, publishable key and billing portal"},
    {"name": "entitlements", "description": "What the current user may access"},
    {"name": "security", "description": "CSRF tokens"},
    {"name": "webhooks", "description": "Stripe webhook receiver"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting %s v%s (%s)...", API_TITLE, APP_VERSION, settings.environment)

    error_registry.load()

    init_db()  # Alembic upgrade head (or create_all without alembic.ini)
    logger.info("Database initialized")

    if not settings.stripe_configured:
        logger.warning("FUTURESELF_STRIPE_SECRET_KEY not set; billing endpoints will return 503")

    yield

    # Shutdown
    logger.info("Shutting down %s...", API_TITLE)
    await close_http_client()
    close_db()
    logger.info("Database connection closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # CORS allow-list; outermost so preflights never reach routing
    app.add_middleware(
        OriginAllowListMiddleware,
        allowed_origins=settings.cors_origins,
        allow_credentials=True,
    )

    # Structured error handlers
    app.add_exception_handler(FutureSelfError, futureself_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "FS-SYS-001",
                    "title": "Internal error",
                    "message": "An unexpected error occurred.",
                    "retryable": True,
                    "user_action_required": False,
                    "remediation": [],
                }
            },
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(checkout.router, prefix="/api", tags=["checkout"])
    app.include_router(payments.router, prefix="/api", tags=["checkout"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(entitlements.router, prefix="/api", tags=["entitlements"])
    app.include_router(csrf.router, prefix="/api", tags=["security"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])

    # Root endpoint
    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": APP_VERSION,
            "environment": settings.environment,
            "status": "running",
        }

    return app


# Create the app instance
app = create_app()
