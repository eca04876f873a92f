"""
Stripe webhook endpoint.

No user authentication: trust comes from the ``stripe-signature`` header,
verified over the raw body before the payload is parsed.
"""
import logging

from fastapi import APIRouter, Depends, Request

from futureself.core.async_utils import run_sync
from futureself.core.errors import FutureSelfError
from futureself.dependencies import get_webhook_processor
from futureself.services.webhook_service import WebhookProcessor

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/stripe", summary="Stripe Webhook", description="Receive billing events from Stripe.")
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    payload = await request.body()
    event = processor.verify(payload, request.headers.get("stripe-signature"))

    try:
        await run_sync(processor.handle, event)
    except FutureSelfError:
        raise
    except Exception as e:
        # Non-2xx makes Stripe redeliver the event.
        logger.exception("Error processing Stripe event %s (%s)", event.get("id"), event.get("type"))
        raise FutureSelfError("FS-WHK-003", detail=str(e)) from e

    return {"received": True}
