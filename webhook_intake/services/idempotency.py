"""
Idempotency store - durable (event_id, provider) ledger.

Every transition is a single conditional statement, so concurrent ingress
requests and workers racing on the same event resolve inside the database:
exactly one of them wins the insert or the conditional update.

Timestamps are always compared in SQL against a cutoff computed here, never
read back and compared in Python.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_intake.database import dialect_name
from webhook_intake.models.webhook_event import (
    WebhookEvent,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_PROCESSED,
    STATUS_FAILED,
)
from webhook_intake.models.webhook_job import WebhookJob, JOB_PENDING, JOB_PROCESSING

logger = logging.getLogger(__name__)

CLAIM_CLAIMED = "claimed"
CLAIM_ALREADY_PROCESSED = "already_processed"
CLAIM_IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class BeginResult:
    already_processed: bool = False
    already_processing: bool = False

    @property
    def is_duplicate(self) -> bool:
        return self.already_processed or self.already_processing


@dataclass(frozen=True)
class ClaimResult:
    outcome: str
    claim_token: Optional[str] = None

    @property
    def claimed(self) -> bool:
        return self.outcome == CLAIM_CLAIMED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _claim_timeout_seconds(claim_timeout_seconds: Optional[int]) -> int:
    if claim_timeout_seconds is not None:
        return claim_timeout_seconds
    from webhook_intake.config import get_settings
    return get_settings().claim_timeout_seconds


def _insert(db: AsyncSession):
    if dialect_name(db) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(WebhookEvent)


def _key(event_id: str, provider: str):
    return and_(WebhookEvent.event_id == event_id, WebhookEvent.provider == provider)


def _has_open_job():
    """Correlated EXISTS: a pending or processing job for the row being tested."""
    return (
        select(WebhookJob.id)
        .where(
            WebhookJob.event_id == WebhookEvent.event_id,
            WebhookJob.provider == WebhookEvent.provider,
            WebhookJob.status.in_([JOB_PENDING, JOB_PROCESSING]),
        )
        .exists()
    )


async def get_status(db: AsyncSession, event_id: str, provider: str) -> Optional[str]:
    result = await db.execute(select(WebhookEvent.status).where(_key(event_id, provider)))
    return result.scalar_one_or_none()


async def get_event(db: AsyncSession, event_id: str, provider: str) -> Optional[WebhookEvent]:
    result = await db.execute(select(WebhookEvent).where(_key(event_id, provider)))
    return result.scalar_one_or_none()


async def try_begin_processing(
    db: AsyncSession,
    event_id: str,
    provider: str,
    correlation_id: str,
    claim_timeout_seconds: Optional[int] = None,
) -> BeginResult:
    """
    Atomically record an accepted event as pending.

    Returns BeginResult() when this caller now owns the event (fresh insert,
    takeover of a released row, or takeover of a stale claim). Otherwise
    reports whether the existing row is processed or still in flight.
    Caller commits.
    """
    now = _utcnow()
    cutoff = now - timedelta(seconds=_claim_timeout_seconds(claim_timeout_seconds))

    inserted = await db.execute(
        _insert(db)
        .values(
            event_id=event_id,
            provider=provider,
            status=STATUS_PENDING,
            correlation_id=correlation_id,
            received_at=now,
            claimed_at=now,
            retry_count=0,
        )
        .on_conflict_do_nothing(index_elements=["event_id", "provider"])
        .returning(WebhookEvent.event_id)
    )
    if inserted.first() is not None:
        return BeginResult()

    taken_over = await db.execute(
        update(WebhookEvent)
        .where(
            _key(event_id, provider),
            WebhookEvent.status != STATUS_PROCESSED,
            or_(
                WebhookEvent.claimed_at.is_(None),
                and_(
                    WebhookEvent.status.in_([STATUS_PENDING, STATUS_PROCESSING]),
                    WebhookEvent.claimed_at < cutoff,
                ),
                # recorded but never queued (crash between the two)
                and_(WebhookEvent.status == STATUS_PENDING, ~_has_open_job()),
            ),
        )
        .values(
            status=STATUS_PENDING,
            correlation_id=correlation_id,
            claimed_at=now,
            claim_token=None,
            error_message=None,
        )
        .returning(WebhookEvent.event_id)
        .execution_options(synchronize_session=False)
    )
    if taken_over.first() is not None:
        logger.info(
            "Idempotency row taken over for redelivery",
            extra={"event_id": event_id, "provider": provider},
        )
        return BeginResult()

    status = await get_status(db, event_id, provider)
    if status == STATUS_PROCESSED:
        return BeginResult(already_processed=True)
    return BeginResult(already_processing=True)


async def claim_for_worker(
    db: AsyncSession,
    event_id: str,
    provider: str,
    correlation_id: str,
    claim_timeout_seconds: Optional[int] = None,
) -> ClaimResult:
    """
    Move the row to processing under a fresh claim token.
    Allowed from pending, failed, or a processing claim older than the claim
    timeout. A missing row is created directly in processing. Caller commits.
    """
    now = _utcnow()
    cutoff = now - timedelta(seconds=_claim_timeout_seconds(claim_timeout_seconds))
    token = uuid.uuid4().hex

    claimed = await db.execute(
        update(WebhookEvent)
        .where(
            _key(event_id, provider),
            or_(
                WebhookEvent.status.in_([STATUS_PENDING, STATUS_FAILED]),
                and_(
                    WebhookEvent.status == STATUS_PROCESSING,
                    or_(WebhookEvent.claimed_at.is_(None), WebhookEvent.claimed_at < cutoff),
                ),
            ),
        )
        .values(status=STATUS_PROCESSING, claimed_at=now, claim_token=token)
        .returning(WebhookEvent.event_id)
        .execution_options(synchronize_session=False)
    )
    if claimed.first() is not None:
        return ClaimResult(CLAIM_CLAIMED, token)

    status = await get_status(db, event_id, provider)
    if status is None:
        inserted = await db.execute(
            _insert(db)
            .values(
                event_id=event_id,
                provider=provider,
                status=STATUS_PROCESSING,
                correlation_id=correlation_id,
                received_at=now,
                claimed_at=now,
                claim_token=token,
                retry_count=0,
            )
            .on_conflict_do_nothing(index_elements=["event_id", "provider"])
            .returning(WebhookEvent.event_id)
        )
        if inserted.first() is not None:
            return ClaimResult(CLAIM_CLAIMED, token)
        status = await get_status(db, event_id, provider)

    if status == STATUS_PROCESSED:
        return ClaimResult(CLAIM_ALREADY_PROCESSED)
    return ClaimResult(CLAIM_IN_FLIGHT)


def _token_guard(claim_token: Optional[str]):
    if claim_token is None:
        return []
    return [WebhookEvent.claim_token == claim_token]


async def mark_processed(
    db: AsyncSession,
    event_id: str,
    provider: str,
    claim_token: Optional[str] = None,
) -> bool:
    """Terminal success. False if the claim was lost to another worker."""
    result = await db.execute(
        update(WebhookEvent)
        .where(_key(event_id, provider), *_token_guard(claim_token))
        .values(
            status=STATUS_PROCESSED,
            processed_at=_utcnow(),
            error_message=None,
            claim_token=None,
        )
        .returning(WebhookEvent.event_id)
        .execution_options(synchronize_session=False)
    )
    return result.first() is not None


async def mark_failed(
    db: AsyncSession,
    event_id: str,
    provider: str,
    error_message: str,
    claim_token: Optional[str] = None,
) -> Optional[int]:
    """
    Record a failure and increment retry_count in SQL.
    Returns the new retry_count, or None if the claim was lost.
    """
    result = await db.execute(
        update(WebhookEvent)
        .where(_key(event_id, provider), *_token_guard(claim_token))
        .values(
            status=STATUS_FAILED,
            error_message=error_message[:2000],
            retry_count=WebhookEvent.retry_count + 1,
            claim_token=None,
        )
        .returning(WebhookEvent.retry_count)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def release(db: AsyncSession, event_id: str, provider: str, error_message: str) -> None:
    """
    Give up ownership of a row nothing is working on.
    The next provider delivery takes the row over.
    """
    await db.execute(
        update(WebhookEvent)
        .where(_key(event_id, provider), WebhookEvent.status != STATUS_PROCESSED)
        .values(
            status=STATUS_FAILED,
            error_message=error_message[:2000],
            claimed_at=None,
            claim_token=None,
        )
        .execution_options(synchronize_session=False)
    )


async def find_stale_claims(
    db: AsyncSession,
    cutoff: datetime,
    limit: int = 100,
) -> list[WebhookEvent]:
    """Rows stuck in pending/processing with a claim older than cutoff."""
    result = await db.execute(
        select(WebhookEvent)
        .where(
            WebhookEvent.status.in_([STATUS_PENDING, STATUS_PROCESSING]),
            WebhookEvent.claimed_at < cutoff,
        )
        .order_by(WebhookEvent.claimed_at)
        .limit(limit)
    )
    return list(result.scalars().all())
