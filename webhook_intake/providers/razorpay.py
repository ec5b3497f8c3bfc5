"""
Razorpay (India, INR) - HMAC-SHA256 hex in X-Razorpay-Signature.
Amounts arrive in paise.
"""
import logging
from typing import Any, Mapping, Optional

from webhook_intake.config import Settings
from webhook_intake.errors import PermanentProcessingFailure
from webhook_intake.providers.base import ProviderAdapter, as_dict, lower_headers
from webhook_intake.schemas.webhooks import PaymentCaptured
from webhook_intake.utils.webhook_signatures import RAZORPAY_SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = ("payment.captured", "payment_link.paid")


def _entity(payload: dict, name: str) -> dict:
    return as_dict(as_dict(as_dict(payload.get("payload")).get(name)).get("entity"))


class RazorpayAdapter(ProviderAdapter):
    name = "razorpay"
    signature_header = RAZORPAY_SIGNATURE_HEADER

    async def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: Settings) -> bool:
        signature = lower_headers(headers).get(self.signature_header.lower())
        return verify_signature(self.name, raw_body, signature, settings.secret_for(self.name))

    def parse_event(self, payload: Any, event_id: str, correlation_id: str) -> Optional[PaymentCaptured]:
        if not isinstance(payload, dict) or payload.get("event") not in SUCCESS_EVENTS:
            return None

        payment = _entity(payload, "payment")
        plink = _entity(payload, "payment_link")
        order = _entity(payload, "order")

        amount = payment.get("amount")
        if amount is None:
            amount = order.get("amount_paid") or order.get("amount") or plink.get("amount_paid") or plink.get("amount")
        currency = payment.get("currency") or order.get("currency") or plink.get("currency")
        order_id = plink.get("id") or order.get("id") or payment.get("order_id") or plink.get("order_id")

        if not order_id or amount is None or not currency:
            raise PermanentProcessingFailure(
                f"Razorpay {payload.get('event')} missing order id, amount or currency"
            )

        try:
            amount_minor = int(amount)
        except (TypeError, ValueError):
            raise PermanentProcessingFailure("Razorpay amount is not an integer")

        return PaymentCaptured(
            provider=self.name,
            event_id=event_id,
            gateway_order_id=str(order_id),
            gateway_payment_id=payment.get("id"),
            amount_minor=amount_minor,
            currency=str(currency),
            correlation_id=correlation_id,
        )
