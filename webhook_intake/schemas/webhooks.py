"""
Webhook pipeline schemas - job payloads, ack bodies, and the normalized
business events handed to the booking and payment services.
"""
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

Provider = Literal["facebook", "instagram", "whatsapp", "razorpay", "paypal"]


class WebhookJobPayload(BaseModel):
    """What ingress puts on the work queue."""
    event_id: str
    provider: Provider
    correlation_id: str
    payload: Any
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AckResponse(BaseModel):
    """Body returned to the provider. Duplicates are acknowledged, not rejected."""
    status: str = "ok"
    duplicate: Optional[bool] = None


class InboundMessage(BaseModel):
    """A direct message from a patient on a Meta platform."""
    kind: Literal["inbound_message"] = "inbound_message"
    provider: Provider
    event_id: str
    sender_id: str = Field(..., description="Platform-scoped id of the person writing")
    recipient_id: Optional[str] = Field(default=None, description="Page / business number receiving it")
    message_id: Optional[str] = None
    text: Optional[str] = None
    edited: bool = False
    correlation_id: str


class PaymentCaptured(BaseModel):
    """A completed payment from a gateway, amounts in minor units."""
    kind: Literal["payment_captured"] = "payment_captured"
    provider: Provider
    event_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    amount_minor: int
    currency: str
    status: Literal["captured"] = "captured"
    correlation_id: str
