"""
Work queue - durable webhook jobs in the webhook_jobs table.

Enqueue also pushes a notification to Redis so idle worker slots wake via
BRPOP instead of waiting for the next DB poll. Redis is only a doorbell; a
lost notification delays a job by at most one poll interval.

Backoff is a future scheduled_at on the same row, never a sleep in a slot.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_intake.database import async_session_factory
from webhook_intake.models.webhook_job import (
    WebhookJob,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_COMPLETED,
    JOB_DEAD,
)
from webhook_intake.schemas.webhooks import WebhookJobPayload

logger = logging.getLogger(__name__)

JOB_NOTIFY_KEY = "webhook_intake:job_notify"
CLAIM_CANDIDATES = 5
NOTIFY_TIMEOUT_SECONDS = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def notify_workers(job_id: str) -> None:
    """Best-effort wake-up for idle worker slots."""
    try:
        from webhook_intake.utils.dedup import get_redis
        redis = await get_redis()
        await asyncio.wait_for(redis.lpush(JOB_NOTIFY_KEY, job_id), timeout=NOTIFY_TIMEOUT_SECONDS)
    except Exception as e:
        logger.debug("Failed to notify webhook workers: %s", str(e))


async def add_job(db: AsyncSession, job: WebhookJobPayload, delay_seconds: int = 0) -> WebhookJob:
    """
    Stage a job row in the caller's transaction. Caller commits.
    Ingress stages it next to the idempotency row so both commit or neither does.
    """
    scheduled_at = _utcnow()
    if delay_seconds > 0:
        scheduled_at = scheduled_at + timedelta(seconds=delay_seconds)

    row = WebhookJob(
        id=uuid.uuid4(),
        event_id=job.event_id,
        provider=job.provider,
        correlation_id=job.correlation_id,
        payload={"body": job.payload, "received_at": job.received_at.isoformat()},
        status=JOB_PENDING,
        attempts=0,
        scheduled_at=scheduled_at,
    )
    db.add(row)
    await db.flush()
    return row


async def enqueue_job(job: WebhookJobPayload, delay_seconds: int = 0) -> str:
    """
    Persist a job for background processing in its own transaction.
    Returns the job id.
    """
    async with async_session_factory() as db:
        row = await add_job(db, job, delay_seconds)
        await db.commit()
        job_id = str(row.id)

    logger.info(
        "Webhook job enqueued: id=%s delay=%ds", job_id[:8], delay_seconds,
        extra={"event_id": job.event_id, "provider": job.provider, "job_id": job_id},
    )

    if delay_seconds == 0:
        await notify_workers(job_id)

    return job_id


async def claim_next_job(db: AsyncSession) -> Optional[WebhookJob]:
    """
    Claim the oldest due pending job for this slot, or None.
    The conditional update on status means two slots never claim the same job.
    Caller commits.
    """
    now = _utcnow()
    result = await db.execute(
        select(WebhookJob.id)
        .where(WebhookJob.status == JOB_PENDING, WebhookJob.scheduled_at <= now)
        .order_by(WebhookJob.scheduled_at, WebhookJob.created_at)
        .limit(CLAIM_CANDIDATES)
    )
    candidate_ids = list(result.scalars().all())

    for job_id in candidate_ids:
        claimed = await db.execute(
            update(WebhookJob)
            .where(WebhookJob.id == job_id, WebhookJob.status == JOB_PENDING)
            .values(
                status=JOB_PROCESSING,
                claimed_at=now,
                attempts=WebhookJob.attempts + 1,
            )
            .returning(WebhookJob.id)
            .execution_options(synchronize_session=False)
        )
        if claimed.first() is None:
            continue
        job = await db.execute(
            select(WebhookJob)
            .where(WebhookJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return job.scalar_one()

    return None


async def complete_job(db: AsyncSession, job_id: uuid.UUID) -> None:
    await db.execute(
        update(WebhookJob)
        .where(WebhookJob.id == job_id)
        .values(status=JOB_COMPLETED, completed_at=_utcnow(), payload=None, last_error=None)
        .execution_options(synchronize_session=False)
    )


async def kill_job(db: AsyncSession, job_id: uuid.UUID, error_message: str) -> None:
    """Terminal failure. The payload now lives only in the encrypted dead letter."""
    await db.execute(
        update(WebhookJob)
        .where(WebhookJob.id == job_id)
        .values(
            status=JOB_DEAD,
            completed_at=_utcnow(),
            payload=None,
            last_error=error_message[:2000],
        )
        .execution_options(synchronize_session=False)
    )


async def reschedule_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    delay_seconds: int,
    error_message: Optional[str] = None,
) -> datetime:
    """Return a claimed job to pending with a future eligibility time."""
    scheduled_at = _utcnow() + timedelta(seconds=delay_seconds)
    values = {"status": JOB_PENDING, "scheduled_at": scheduled_at, "claimed_at": None}
    if error_message is not None:
        values["last_error"] = error_message[:2000]
    await db.execute(
        update(WebhookJob)
        .where(WebhookJob.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return scheduled_at


async def requeue_stale_jobs(db: AsyncSession, cutoff: datetime) -> int:
    """Return jobs whose worker vanished mid-run to pending. Caller commits."""
    result = await db.execute(
        update(WebhookJob)
        .where(WebhookJob.status == JOB_PROCESSING, WebhookJob.claimed_at < cutoff)
        .values(status=JOB_PENDING, scheduled_at=_utcnow(), claimed_at=None)
        .returning(WebhookJob.id)
        .execution_options(synchronize_session=False)
    )
    return len(result.all())


async def has_open_job(db: AsyncSession, event_id: str, provider: str) -> bool:
    result = await db.execute(
        select(func.count())
        .select_from(WebhookJob)
        .where(
            WebhookJob.event_id == event_id,
            WebhookJob.provider == provider,
            WebhookJob.status.in_([JOB_PENDING, JOB_PROCESSING]),
        )
    )
    return (result.scalar() or 0) > 0


async def queue_depth(db: AsyncSession) -> dict:
    result = await db.execute(
        select(WebhookJob.status, func.count())
        .where(WebhookJob.status.in_([JOB_PENDING, JOB_PROCESSING]))
        .group_by(WebhookJob.status)
    )
    depth = {JOB_PENDING: 0, JOB_PROCESSING: 0}
    for status, count in result.all():
        depth[status] = count
    return depth
