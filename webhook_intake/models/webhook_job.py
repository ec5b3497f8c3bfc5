"""
WebhookJob - durable work queue for accepted webhooks.
Supports delayed re-scheduling (scheduled_at) for backoff and a claim
timestamp so crashed workers' jobs can be reclaimed.

Not authoritative for "was this processed" - WebhookEvent is.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from webhook_intake.database import Base

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_DEAD = "dead"


class WebhookJob(Base):
    __tablename__ = "webhook_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Transient: cleared once the job reaches a terminal state
    payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    status: Mapped[str] = mapped_column(
        String(20), default=JOB_PENDING, nullable=False
    )  # pending, processing, completed, dead
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_webhook_jobs_due", "status", "scheduled_at"),
        Index("ix_webhook_jobs_event", "event_id", "provider"),
    )

    def __repr__(self) -> str:
        return f"<WebhookJob {self.provider}:{self.event_id} ({self.status})>"
