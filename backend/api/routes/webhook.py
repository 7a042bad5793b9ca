"""Payment gateway webhook endpoint."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from api.deps import get_webhook_processor
from api.middleware.rate_limit import get_rate_limit, limiter
from services.webhook_processor import WebhookEventProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


@router.post("/webhook")
@limiter.limit(get_rate_limit("webhook"))
async def handle_webhook(
    request: Request,
    processor: Annotated[WebhookEventProcessor, Depends(get_webhook_processor)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> JSONResponse:
    """
    Receive a Stripe event.

    The raw body is handed to the processor untouched because the signature
    covers the exact bytes. 400 stops gateway retries, 500 asks for one.
    """
    body = await request.body()
    result = await processor.handle(body, stripe_signature)
    return JSONResponse(status_code=result.status_code, content=result.body)
