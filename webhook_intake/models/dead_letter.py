"""
Dead letter store - webhook payloads that could not be processed.
payload_encrypted is AES-256-GCM ciphertext; plaintext payloads never land here.
Read only by operator tooling; nothing reprocesses these rows automatically.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Text, Integer, DateTime, LargeBinary, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from webhook_intake.database import Base


class DeadLetterEntry(Base):
    __tablename__ = "webhook_dead_letter"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_stage: Mapped[str] = mapped_column(
        String(20), nullable=False, default="worker"
    )  # ingress, worker
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_webhook_dead_letter_event", "event_id", "provider"),
        Index("ix_webhook_dead_letter_provider", "provider"),
        Index("ix_webhook_dead_letter_failed_at", "failed_at"),
    )

    def __repr__(self) -> str:
        return f"<DeadLetterEntry {self.provider}:{self.event_id} retries={self.retry_count}>"
