"""
PayPal (international) - verified remotely via the Notifications API.

Flow: OAuth client-credentials token, then
POST /v1/notifications/verify-webhook-signature with the PAYPAL-* transmission
headers, the configured webhook id and the event parsed from the raw body.
Any network or API error fails closed.
"""
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from webhook_intake.config import Settings
from webhook_intake.errors import PermanentProcessingFailure
from webhook_intake.providers.base import ProviderAdapter, as_dict, lower_headers
from webhook_intake.schemas.webhooks import PaymentCaptured

logger = logging.getLogger(__name__)

LIVE_BASE_URL = "https://api-m.paypal.com"
SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
TIMEOUT = 10.0

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"


def paypal_base_url(settings: Settings) -> str:
    return LIVE_BASE_URL if settings.paypal_mode == "live" else SANDBOX_BASE_URL


class PayPalAdapter(ProviderAdapter):
    name = "paypal"
    signature_header = "PAYPAL-TRANSMISSION-SIG"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=TIMEOUT, transport=self._transport)

    async def _access_token(self, client: httpx.AsyncClient, settings: Settings) -> str:
        response = await client.post(
            f"{paypal_base_url(settings)}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(settings.paypal_client_id, settings.paypal_client_secret),
        )
        response.raise_for_status()
        return response.json()["access_token"]

    async def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: Settings) -> bool:
        lowered = lower_headers(headers)
        fields = {key: lowered.get(header) for key, header in TRANSMISSION_HEADERS.items()}
        if not all(fields.values()):
            logger.warning("Missing PayPal webhook verification headers", extra={"provider": self.name})
            return False

        if not settings.paypal_webhook_id or not settings.paypal_client_id or not settings.paypal_client_secret:
            logger.error("PayPal webhook verification not configured", extra={"provider": self.name})
            return False

        try:
            webhook_event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            return False

        try:
            async with self._client() as client:
                token = await self._access_token(client, settings)
                response = await client.post(
                    f"{paypal_base_url(settings)}/v1/notifications/verify-webhook-signature",
                    headers={"Authorization": f"Bearer {token}"},
                    json={
                        **fields,
                        "webhook_id": settings.paypal_webhook_id,
                        "webhook_event": webhook_event,
                    },
                )
                response.raise_for_status()
                return response.json().get("verification_status") == "SUCCESS"
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(
                "PayPal verification call failed: %s", type(e).__name__,
                extra={"provider": self.name},
            )
            return False

    def parse_event(self, payload: Any, event_id: str, correlation_id: str) -> Optional[PaymentCaptured]:
        if not isinstance(payload, dict) or payload.get("event_type") != CAPTURE_COMPLETED:
            return None

        resource = payload.get("resource")
        if not isinstance(resource, dict):
            raise PermanentProcessingFailure("PayPal capture event has no resource")

        amount = as_dict(resource.get("amount"))
        capture_id = resource.get("id")
        value = amount.get("value")
        currency = amount.get("currency_code")
        if not capture_id or not value or not currency:
            raise PermanentProcessingFailure("PayPal capture missing id, amount or currency")

        try:
            amount_minor = int((Decimal(str(value)) * 100).to_integral_value())
        except InvalidOperation:
            raise PermanentProcessingFailure("PayPal amount is not a decimal")

        order_id = as_dict(as_dict(resource.get("supplementary_data")).get("related_ids")).get("order_id")

        return PaymentCaptured(
            provider=self.name,
            event_id=event_id,
            gateway_order_id=str(order_id or capture_id),
            gateway_payment_id=str(capture_id),
            amount_minor=amount_minor,
            currency=str(currency),
            correlation_id=correlation_id,
        )
