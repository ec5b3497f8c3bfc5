"""
Webhook idempotency record - one row per (event_id, provider).
The composite primary key is what makes processing at-most-once: every
mutation goes through a single conditional statement in services.idempotency.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from webhook_intake.database import Base

PROVIDERS = ("facebook", "instagram", "whatsapp", "razorpay", "paypal")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


class WebhookEvent(Base):
    __tablename__ = "webhook_idempotency"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String(20), primary_key=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=STATUS_PENDING, server_default=STATUS_PENDING
    )  # pending, processing, processed, failed
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    # NULL = released, the next delivery may take the row over
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    claim_token: Mapped[Optional[str]] = mapped_column(String(32))

    __table_args__ = (
        Index("ix_webhook_idempotency_status_claimed", "status", "claimed_at"),
        Index("ix_webhook_idempotency_correlation_id", "correlation_id"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider}:{self.event_id} ({self.status})>"
