"""
Webhook endpoints - inbound deliveries from Meta platforms and payment gateways.

POST /webhooks/{provider}  - verify, dedup, enqueue, ack
GET  /webhooks/{provider}  - Meta subscription handshake

The raw body is read once, before anything parses it, and the same bytes are
used for the signature check and the JSON decode.
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from webhook_intake.config import get_settings
from webhook_intake.providers import META_PROVIDERS, get_adapter, verify_subscription
from webhook_intake.schemas.webhooks import AckResponse
from webhook_intake.services.ingress import handle_webhook
from webhook_intake.utils.logging import get_correlation_id, generate_correlation_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(provider: str, request: Request):
    if get_adapter(provider) is None:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")

    raw_body = await request.body()
    correlation_id = get_correlation_id() or generate_correlation_id()

    result = await handle_webhook(
        provider,
        raw_body,
        request.headers,
        correlation_id,
        client_ip=request.client.host if request.client else None,
    )

    if result.status_code == 401:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    if result.status_code == 400:
        raise HTTPException(status_code=400, detail="Malformed webhook payload")
    if result.status_code >= 500:
        return JSONResponse(status_code=500, content={"status": "error"})

    ack = AckResponse(duplicate=True if result.duplicate else None)
    return ack.model_dump(exclude_none=True)


@router.get("/{provider}")
async def verify_webhook_subscription(provider: str, request: Request):
    if provider not in META_PROVIDERS:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")

    challenge = verify_subscription(request.query_params, get_settings().meta_verify_token)
    if challenge is None:
        logger.warning("Webhook subscription handshake rejected", extra={"provider": provider})
        raise HTTPException(status_code=403, detail="Verification failed")

    logger.info("Webhook subscription verified", extra={"provider": provider})
    return PlainTextResponse(challenge)
