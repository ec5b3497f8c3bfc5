"""Webhook pipeline schema - idempotency, dead letter, audit log, job queue.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Idempotency ledger - composite PK is the at-most-once guarantee
    op.create_table(
        "webhook_idempotency",
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("claim_token", sa.String(32)),
        sa.PrimaryKeyConstraint("event_id", "provider"),
        sa.CheckConstraint(
            "provider IN ('facebook', 'instagram', 'whatsapp', 'razorpay', 'paypal')",
            name="ck_webhook_idempotency_provider",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'processed', 'failed')",
            name="ck_webhook_idempotency_status",
        ),
    )
    op.create_index("ix_webhook_idempotency_status_claimed", "webhook_idempotency", ["status", "claimed_at"])
    op.create_index("ix_webhook_idempotency_correlation_id", "webhook_idempotency", ["correlation_id"])

    # Dead letter - payload is AES-256-GCM ciphertext only
    op.create_table(
        "webhook_dead_letter",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column("payload_encrypted", sa.LargeBinary, nullable=False),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failure_stage", sa.String(20), nullable=False, server_default="worker"),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_dead_letter_event", "webhook_dead_letter", ["event_id", "provider"])
    op.create_index("ix_webhook_dead_letter_provider", "webhook_dead_letter", ["provider"])
    op.create_index("ix_webhook_dead_letter_failed_at", "webhook_dead_letter", ["failed_at"])

    # Audit log - append-only, metadata only
    op.create_table(
        "audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column("resource_type", sa.String(30), nullable=False, server_default="webhook"),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_correlation_id", "audit_log", ["correlation_id"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])

    # Work queue
    op.create_table(
        "webhook_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_jobs_due", "webhook_jobs", ["status", "scheduled_at"])
    op.create_index("ix_webhook_jobs_event", "webhook_jobs", ["event_id", "provider"])

    # Audit rows are never updated or deleted by the application
    op.execute("REVOKE UPDATE, DELETE ON audit_log FROM PUBLIC")


def downgrade() -> None:
    op.drop_table("webhook_jobs")
    op.drop_table("audit_log")
    op.drop_table("webhook_dead_letter")
    op.drop_table("webhook_idempotency")
