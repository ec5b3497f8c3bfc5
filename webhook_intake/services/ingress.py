"""
Ingress handler - the synchronous ack path for inbound webhooks.

    received -> signature_verified -> deduplicated_checked -> enqueued -> acknowledged

Error exits: rejected_unauthorized (401), rejected_malformed (400),
rejected_duplicate (200, idempotent), dead_lettered (200, queue or store
down but the event is safe in the dead letter), unrecorded (500, nothing
could take the event; the provider's own retry is the recovery path).

Nothing here depends on a business handler. The idempotency row and its job
commit together, so a crash can never leave an accepted event without a job.
Every round trip is bounded so a slow database or Redis cannot push the
response past the provider's delivery timeout.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from webhook_intake.config import get_settings
from webhook_intake.database import async_session_factory
from webhook_intake.errors import DuplicateEvent, InfrastructureUnavailable, UnauthorizedWebhook
from webhook_intake.providers import get_adapter
from webhook_intake.schemas.webhooks import WebhookJobPayload
from webhook_intake.services import idempotency
from webhook_intake.services.audit import record_webhook_audit, ACTION_RECEIVED
from webhook_intake.models.dead_letter import DeadLetterEntry
from webhook_intake.services.dead_letter import store_dead_letter, audit_dead_letter, STAGE_INGRESS
from webhook_intake.services.work_queue import add_job, notify_workers
from webhook_intake.utils.dedup import is_marked_processed

logger = logging.getLogger(__name__)

STATE_ACKNOWLEDGED = "acknowledged"
STATE_REJECTED_UNAUTHORIZED = "rejected_unauthorized"
STATE_REJECTED_MALFORMED = "rejected_malformed"
STATE_REJECTED_DUPLICATE = "rejected_duplicate"
STATE_DEAD_LETTERED = "dead_lettered"
STATE_UNRECORDED = "unrecorded"

STATUS_CODES = {
    STATE_ACKNOWLEDGED: 200,
    STATE_REJECTED_DUPLICATE: 200,
    STATE_DEAD_LETTERED: 200,
    STATE_REJECTED_UNAUTHORIZED: 401,
    STATE_REJECTED_MALFORMED: 400,
    STATE_UNRECORDED: 500,
}


@dataclass
class IngressResult:
    state: str
    event_id: Optional[str] = None
    job_id: Optional[str] = None

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.state]

    @property
    def duplicate(self) -> bool:
        return self.state == STATE_REJECTED_DUPLICATE


async def _verify(adapter, raw_body: bytes, headers: Mapping[str, str], settings, client_ip: Optional[str]) -> None:
    if not await adapter.verify(raw_body, headers, settings):
        logger.warning(
            "Webhook signature rejected",
            extra={"provider": adapter.name, "client_ip": client_ip},
        )
        raise UnauthorizedWebhook(f"{adapter.name} signature missing or invalid")


async def _bounded(coro, timeout: float, what: str):
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except DuplicateEvent:
        raise
    except Exception as e:
        raise InfrastructureUnavailable(f"{what} unavailable: {type(e).__name__}: {e}") from e


async def _record(job: WebhookJobPayload) -> str:
    """
    Insert the idempotency row and its job in one transaction.
    Raises DuplicateEvent when another delivery already owns the event.
    """
    async with async_session_factory() as db:
        begin = await idempotency.try_begin_processing(db, job.event_id, job.provider, job.correlation_id)
        if begin.is_duplicate:
            raise DuplicateEvent("processed" if begin.already_processed else "in flight")
        row = await add_job(db, job)
        job_id = str(row.id)
        await db.commit()
    return job_id


async def _dead_letter(job: WebhookJobPayload, error_message: str) -> DeadLetterEntry:
    """
    Store the event in the dead letter and mark its row failed, in one transaction.
    Raises DuplicateEvent when the row turns out to be owned already, e.g. the
    first attempt committed after its timeout fired.
    """
    async with async_session_factory() as db:
        begin = await idempotency.try_begin_processing(db, job.event_id, job.provider, job.correlation_id)
        if begin.is_duplicate:
            raise DuplicateEvent("processed" if begin.already_processed else "in flight")
        entry = await store_dead_letter(
            db,
            event_id=job.event_id,
            provider=job.provider,
            correlation_id=job.correlation_id,
            payload=job.payload,
            error_message=error_message,
            retry_count=0,
            failure_stage=STAGE_INGRESS,
        )
        await idempotency.mark_failed(db, job.event_id, job.provider, error_message)
        await db.commit()
    return entry


async def _audit(coro, timeout: float, log_extra: dict) -> None:
    try:
        await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Ingress audit write timed out", extra=log_extra)


async def handle_webhook(
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    correlation_id: str,
    client_ip: Optional[str] = None,
) -> IngressResult:
    """
    Run one delivery through the ack path. Provider must be a known adapter key.
    """
    settings = get_settings()
    adapter = get_adapter(provider)

    # 1. Signature over the exact raw bytes, before any parsing
    try:
        await _verify(adapter, raw_body, headers, settings, client_ip)
    except UnauthorizedWebhook:
        return IngressResult(STATE_REJECTED_UNAUTHORIZED)

    # 2. Parse and identify
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON", extra={"provider": provider})
        return IngressResult(STATE_REJECTED_MALFORMED)

    event_id = adapter.extract_event_id(payload)
    log_extra = {"event_id": event_id, "provider": provider}
    job = WebhookJobPayload(
        event_id=event_id,
        provider=provider,
        correlation_id=correlation_id,
        payload=payload,
    )

    try:
        # 3. Dedup: Redis hint first, database is authoritative
        if await is_marked_processed(provider, event_id, timeout=settings.ingress_hint_timeout_seconds):
            raise DuplicateEvent("processed hint")

        # 4. Record and enqueue
        job_id = await _bounded(_record(job), settings.ingress_store_timeout_seconds, "Event store")
    except DuplicateEvent as e:
        logger.info("Duplicate webhook (%s)", str(e), extra=log_extra)
        return IngressResult(STATE_REJECTED_DUPLICATE, event_id=event_id)
    except InfrastructureUnavailable as e:
        logger.error("Webhook ingress degraded: %s", str(e), extra=log_extra)
        return await _degraded(job, str(e), settings, log_extra)

    await notify_workers(job_id)

    # 5/6. Ack and audit
    await _audit(
        record_webhook_audit(ACTION_RECEIVED, correlation_id, event_id, provider),
        settings.ingress_audit_timeout_seconds,
        log_extra,
    )
    logger.info("Webhook accepted: job=%s", job_id[:8], extra={**log_extra, "job_id": job_id})
    return IngressResult(STATE_ACKNOWLEDGED, event_id=event_id, job_id=job_id)


async def _degraded(job: WebhookJobPayload, error_message: str, settings, log_extra: dict) -> IngressResult:
    """The event store or queue failed: write straight to the dead letter or answer 500."""
    try:
        entry = await asyncio.wait_for(
            _dead_letter(job, error_message),
            timeout=settings.ingress_dead_letter_timeout_seconds,
        )
    except DuplicateEvent as e:
        logger.info("Duplicate webhook (%s)", str(e), extra=log_extra)
        return IngressResult(STATE_REJECTED_DUPLICATE, event_id=job.event_id)
    except Exception as e:
        # The next delivery starts from scratch, or is a duplicate if this write landed late
        logger.critical(
            "Dead letter write failed at ingress: %s", str(e) or type(e).__name__,
            extra=log_extra,
        )
        return IngressResult(STATE_UNRECORDED, event_id=job.event_id)

    await _audit(audit_dead_letter(entry), settings.ingress_audit_timeout_seconds, log_extra)
    return IngressResult(STATE_DEAD_LETTERED, event_id=job.event_id)
