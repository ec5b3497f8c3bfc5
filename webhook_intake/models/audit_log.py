"""
Audit log - append-only record of webhook lifecycle transitions.
Metadata only: event_id and provider. Never payload content.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from webhook_intake.database import Base


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="webhook"
    )  # webhook, dead_letter
    action: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # webhook_received, webhook_processed, webhook_failed, dead_letter_stored
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # success, failure
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_audit_log_correlation_id", "correlation_id"),
        Index("ix_audit_log_action", "action"),
        Index("ix_audit_log_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} status={self.status}>"
