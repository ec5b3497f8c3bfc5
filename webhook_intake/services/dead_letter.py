"""
Dead letter store - encrypted payloads of webhooks that could not be processed.

Entries come from two places: ingress, when neither the idempotency store nor
the work queue could take the event, and the worker, on exhausted retries or a
permanent failure. Nothing reprocesses them automatically; operators use
scripts/dead_letters.py.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_intake.models.dead_letter import DeadLetterEntry
from webhook_intake.services.audit import (
    record_webhook_audit,
    ACTION_DEAD_LETTER_STORED,
    STATUS_FAILURE,
)
from webhook_intake.utils.encryption import encrypt_payload, decrypt_payload

logger = logging.getLogger(__name__)

STAGE_INGRESS = "ingress"
STAGE_WORKER = "worker"


async def store_dead_letter(
    db: AsyncSession,
    event_id: str,
    provider: str,
    correlation_id: str,
    payload: Any,
    error_message: str,
    retry_count: int,
    failure_stage: str = STAGE_WORKER,
    received_at: Optional[datetime] = None,
) -> DeadLetterEntry:
    """
    Encrypt and persist a failed webhook. Caller commits.
    Raises if encryption or the insert fails; there is no plaintext fallback.
    """
    entry = DeadLetterEntry(
        event_id=event_id,
        provider=provider,
        correlation_id=correlation_id,
        payload_encrypted=encrypt_payload(payload, provider, event_id),
        error_message=error_message[:2000],
        retry_count=retry_count,
        failure_stage=failure_stage,
        received_at=received_at or datetime.now(timezone.utc),
        failed_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.flush()

    logger.warning(
        "Webhook dead-lettered: stage=%s retries=%d error=%s id=%s",
        failure_stage, retry_count, error_message[:100], str(entry.id)[:8],
        extra={"event_id": event_id, "provider": provider, "retry_count": retry_count},
    )
    return entry


async def audit_dead_letter(entry: DeadLetterEntry) -> None:
    """Record the dead letter write. Call after the entry is committed."""
    await record_webhook_audit(
        ACTION_DEAD_LETTER_STORED,
        entry.correlation_id,
        entry.event_id,
        entry.provider,
        status=STATUS_FAILURE,
        error_message=entry.error_message,
        resource_type="dead_letter",
    )


async def list_dead_letters(
    db: AsyncSession,
    provider: Optional[str] = None,
    limit: int = 50,
) -> list[DeadLetterEntry]:
    query = select(DeadLetterEntry).order_by(DeadLetterEntry.failed_at.desc()).limit(limit)
    if provider:
        query = query.where(DeadLetterEntry.provider == provider)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_dead_letter(
    db: AsyncSession,
    event_id: str,
    provider: str,
) -> Optional[DeadLetterEntry]:
    """Most recent dead letter for an event (an event can be dead-lettered more than once)."""
    result = await db.execute(
        select(DeadLetterEntry)
        .where(DeadLetterEntry.event_id == event_id, DeadLetterEntry.provider == provider)
        .order_by(DeadLetterEntry.failed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def decrypt_dead_letter_payload(entry: DeadLetterEntry) -> Any:
    return decrypt_payload(entry.payload_encrypted, entry.provider, entry.event_id)
