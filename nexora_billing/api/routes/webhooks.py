"""Inbound Stripe webhook endpoint."""

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from nexora_billing.core.config import get_settings
from nexora_billing.db.redis import get_redis, redis_available
from nexora_billing.webhooks.processor import WebhookProcessor, build_processor
from nexora_billing.webhooks.rate_limit import get_client_ip

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Processor built at startup; built lazily if the lifespan did not run."""
    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        redis = get_redis() if redis_available() else None
        processor = build_processor(get_settings(), redis)
        request.app.state.webhook_processor = processor
    return processor


@router.post("/webhooks/stripe")
@router.post("/webhook")
async def stripe_webhook(request: Request):
    """Handle Stripe webhook events. Always answers with JSON."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    # Raw bytes: the signature covers the exact body
    body = await request.body()
    outcome = await get_webhook_processor(request).process(
        body,
        request.headers.get("stripe-signature"),
        get_client_ip(request),
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.body, headers=outcome.headers)
