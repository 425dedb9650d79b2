"""Google Play webhook endpoint: receives Pub/Sub pushed developer notifications."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response

from digifarmacy.api.deps import ClientRateLimit, get_webhook_processor
from digifarmacy.billing.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["webhooks"])

SIGNATURE_HEADER = "X-Goog-Signature"


@router.post("/webhook", dependencies=[Depends(ClientRateLimit("webhook"))])
async def google_play_webhook(
    request: Request,
    response: Response,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> dict[str, Any]:
    """Receive and process a Google Play real-time developer notification."""
    # Raw bytes: the signature covers the body exactly as sent
    payload = await request.body()
    outcome = await processor.handle(payload, request.headers.get(SIGNATURE_HEADER))
    response.status_code = outcome.status_code
    return outcome.body
