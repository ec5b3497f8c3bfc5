"""
Webhook worker pool - claims due jobs from webhook_jobs and runs the
provider's business handler under a timeout.

Each slot processes one job at a time. Idle slots wake on a Redis BRPOP
notification, with a DB poll every WORKER_POLL_INTERVAL_SECONDS as the safety
net. Failed jobs go back to the table with a future scheduled_at instead of
sleeping in a slot.

A claim sweeper runs beside the pool and returns jobs abandoned by a crashed
or cancelled worker to pending once their claim is older than
CLAIM_TIMEOUT_SECONDS.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from webhook_intake.config import get_settings
from webhook_intake.database import async_session_factory
from webhook_intake.errors import PermanentProcessingFailure, ProcessingFailure
from webhook_intake.models.webhook_job import WebhookJob
from webhook_intake.providers import get_adapter
from webhook_intake.services import idempotency, work_queue
from webhook_intake.services.audit import (
    record_webhook_audit,
    ACTION_PROCESSED,
    ACTION_FAILED,
    STATUS_FAILURE,
)
from webhook_intake.services.dead_letter import store_dead_letter, audit_dead_letter, STAGE_WORKER
from webhook_intake.services.handlers import HandlerRegistry, handler_registry
from webhook_intake.services.work_queue import JOB_NOTIFY_KEY
from webhook_intake.utils.dedup import mark_processed_hint
from webhook_intake.utils.logging import set_correlation_id, set_event_id

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5  # below REDIS_SOCKET_TIMEOUT_SECONDS
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20

OUTCOME_PROCESSED = "processed"
OUTCOME_SKIPPED = "skipped"  # already processed by an earlier job
OUTCOME_DEFERRED = "deferred"  # another worker holds a live claim
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_DEAD_LETTERED = "dead_lettered"
OUTCOME_CLAIM_LOST = "claim_lost"
OUTCOME_STALLED = "stalled"  # dead letter write failed, sweeper recovers it


def _parse_received_at(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


async def _heartbeat(name: str, ttl: int = 120) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        from webhook_intake.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            f"webhook_intake:worker_health:{name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def process_job(job: WebhookJob, registry: Optional[HandlerRegistry] = None) -> str:
    """Run one claimed job to a terminal or rescheduled state. Returns the outcome."""
    settings = get_settings()
    registry = registry or handler_registry

    set_correlation_id(job.correlation_id)
    set_event_id(job.event_id)
    extra = {"event_id": job.event_id, "provider": job.provider, "job_id": str(job.id)}

    stored = job.payload or {}
    body = stored.get("body")
    received_at = _parse_received_at(stored.get("received_at"))

    # Second line of defence: the idempotency row decides, not the job
    async with async_session_factory() as db:
        claim = await idempotency.claim_for_worker(db, job.event_id, job.provider, job.correlation_id)
        if claim.outcome == idempotency.CLAIM_ALREADY_PROCESSED:
            await work_queue.complete_job(db, job.id)
            await db.commit()
            logger.info("Event already processed, job closed without handler", extra=extra)
            return OUTCOME_SKIPPED
        if claim.outcome == idempotency.CLAIM_IN_FLIGHT:
            await work_queue.reschedule_job(db, job.id, settings.claim_timeout_seconds)
            await db.commit()
            logger.info("Event claimed by another worker, job deferred", extra=extra)
            return OUTCOME_DEFERRED
        await db.commit()

    handler = registry.get(job.provider)
    adapter = get_adapter(job.provider)
    timeout = adapter.handler_timeout(settings) if adapter else settings.meta_handler_timeout_seconds

    try:
        if handler is None:
            raise PermanentProcessingFailure(f"No handler registered for {job.provider}")
        await asyncio.wait_for(handler(job.provider, body), timeout=timeout)
    except ProcessingFailure as e:
        return await _handle_failure(job, claim.claim_token, body, received_at, e.message, permanent=not e.retryable)
    except asyncio.TimeoutError:
        error = f"Handler timed out after {timeout:g}s"
        return await _handle_failure(job, claim.claim_token, body, received_at, error, permanent=False)
    except Exception as e:
        error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
        return await _handle_failure(job, claim.claim_token, body, received_at, error, permanent=False)

    async with async_session_factory() as db:
        owned = await idempotency.mark_processed(db, job.event_id, job.provider, claim.claim_token)
        if owned:
            await work_queue.complete_job(db, job.id)
        await db.commit()

    if not owned:
        logger.warning("Claim lost before completion, leaving job to its new owner", extra=extra)
        return OUTCOME_CLAIM_LOST

    await mark_processed_hint(job.provider, job.event_id)
    await record_webhook_audit(ACTION_PROCESSED, job.correlation_id, job.event_id, job.provider)
    logger.info("Webhook processed: attempt=%d", job.attempts, extra=extra)
    return OUTCOME_PROCESSED


async def _handle_failure(
    job: WebhookJob,
    claim_token: Optional[str],
    body,
    received_at: Optional[datetime],
    error: str,
    permanent: bool,
) -> str:
    """Record the failure, then either reschedule with backoff or dead-letter."""
    settings = get_settings()
    max_retries = settings.webhook_max_retries
    extra = {"event_id": job.event_id, "provider": job.provider, "job_id": str(job.id)}

    try:
        async with async_session_factory() as db:
            retry_count = await idempotency.mark_failed(
                db, job.event_id, job.provider, error, claim_token=claim_token,
            )
            if retry_count is None:
                await db.commit()
                logger.warning("Claim lost before failure could be recorded", extra=extra)
                return OUTCOME_CLAIM_LOST

            if not permanent and retry_count < max_retries:
                delay = settings.backoff_seconds(retry_count)
                await work_queue.reschedule_job(db, job.id, delay, error)
                await db.commit()
                logger.warning(
                    "Webhook retry %d/%d in %ds: %s", retry_count, max_retries, delay, error,
                    extra={**extra, "retry_count": retry_count},
                )
                return OUTCOME_RETRY_SCHEDULED

            entry = await store_dead_letter(
                db,
                event_id=job.event_id,
                provider=job.provider,
                correlation_id=job.correlation_id,
                payload=body,
                error_message=error,
                retry_count=retry_count,
                failure_stage=STAGE_WORKER,
                received_at=received_at,
            )
            await work_queue.kill_job(db, job.id, error)
            await db.commit()
    except Exception as e:
        # Nothing committed: row stays processing, the sweeper requeues the job
        logger.critical(
            "Failure bookkeeping failed, job left for claim sweeper: %s", str(e),
            extra=extra,
        )
        return OUTCOME_STALLED

    logger.error(
        "Webhook %s after %d attempt(s): %s",
        "permanently failed" if permanent else "exhausted retries", retry_count, error,
        extra={**extra, "retry_count": retry_count},
    )
    await record_webhook_audit(
        ACTION_FAILED, job.correlation_id, job.event_id, job.provider,
        status=STATUS_FAILURE, error_message=error,
    )
    await audit_dead_letter(entry)
    return OUTCOME_DEAD_LETTERED


async def process_next_job(registry: Optional[HandlerRegistry] = None) -> Optional[str]:
    """Claim and process one due job. Returns None when the queue has nothing due."""
    async with async_session_factory() as db:
        job = await work_queue.claim_next_job(db)
        await db.commit()

    if job is None:
        return None

    try:
        return await process_job(job, registry)
    finally:
        set_event_id(None)


async def _run_slot(slot: int, wake: asyncio.Event, registry: Optional[HandlerRegistry]) -> None:
    settings = get_settings()
    while True:
        try:
            while await process_next_job(registry) is not None:
                pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Webhook worker slot %d cycle error: %s", slot, str(e), exc_info=True)

        try:
            await asyncio.wait_for(wake.wait(), timeout=settings.worker_poll_interval_seconds)
        except asyncio.TimeoutError:
            pass


async def _listen_for_notifications(wake: asyncio.Event) -> None:
    """BRPOP on the job notify key and wake idle slots. Falls back to polling."""
    settings = get_settings()
    while True:
        wake.clear()
        try:
            from webhook_intake.utils.dedup import get_redis
            redis = await get_redis()
            result = await redis.brpop(JOB_NOTIFY_KEY, timeout=BRPOP_TIMEOUT)
            if result:
                # Drain any additional notifications to avoid stacking
                while await redis.rpop(JOB_NOTIFY_KEY):
                    pass
                wake.set()
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Redis BRPOP unavailable, falling back to poll: %s", str(e))
            await asyncio.sleep(settings.worker_poll_interval_seconds)

        await _heartbeat("webhook_worker")


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, value))


async def run_webhook_workers(
    concurrency: Optional[int] = None,
    registry: Optional[HandlerRegistry] = None,
) -> None:
    """Run the slot pool and its notification listener until cancelled."""
    settings = get_settings()
    width = clamp_concurrency(concurrency or settings.webhook_worker_concurrency)
    wake = asyncio.Event()

    tasks = [asyncio.create_task(_listen_for_notifications(wake))]
    tasks.extend(
        asyncio.create_task(_run_slot(slot, wake, registry)) for slot in range(width)
    )
    logger.info("Webhook worker pool started (%d slots, BRPOP %ds timeout)", width, BRPOP_TIMEOUT)

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def sweep_stale_claims() -> dict:
    """
    Requeue jobs whose claim outlived CLAIM_TIMEOUT_SECONDS and release
    idempotency rows stuck without any open job.
    """
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.claim_timeout_seconds)

    async with async_session_factory() as db:
        requeued = await work_queue.requeue_stale_jobs(db, cutoff)
        await db.commit()

        orphaned = 0
        for row in await idempotency.find_stale_claims(db, cutoff):
            if not await work_queue.has_open_job(db, row.event_id, row.provider):
                orphaned += 1
                # Next provider delivery takes the row over
                logger.warning(
                    "Stale %s idempotency row has no open job, releasing", row.status,
                    extra={"event_id": row.event_id, "provider": row.provider},
                )
                await idempotency.release(db, row.event_id, row.provider, "Released by claim sweeper: no open job")
        await db.commit()

    if requeued:
        logger.warning("Claim sweeper requeued %d stuck webhook jobs", requeued)
        await work_queue.notify_workers("sweeper")

    return {"requeued_jobs": requeued, "orphaned_rows": orphaned}


async def run_claim_sweeper() -> None:
    """Main sweeper loop."""
    settings = get_settings()
    logger.info("Claim sweeper started (every %ds)", settings.claim_sweep_interval_seconds)

    while True:
        try:
            await sweep_stale_claims()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Claim sweeper error: %s", str(e), exc_info=True)

        await _heartbeat("claim_sweeper", ttl=settings.claim_sweep_interval_seconds * 3)
        await asyncio.sleep(settings.claim_sweep_interval_seconds)
