"""
Idempotency store tests - atomic begin, worker claims, terminal transitions.
"""
import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from webhook_intake.database import async_session_factory
from webhook_intake.models.webhook_event import WebhookEvent
from webhook_intake.schemas.webhooks import WebhookJobPayload
from webhook_intake.services import idempotency, work_queue
from webhook_intake.services.idempotency import (
    CLAIM_ALREADY_PROCESSED,
    CLAIM_CLAIMED,
    CLAIM_IN_FLIGHT,
)


async def _accept(db, event_id: str, provider: str = "razorpay", correlation_id: str = "cid-1"):
    """Begin and stage the job in one transaction, the way ingress records a delivery."""
    result = await idempotency.try_begin_processing(db, event_id, provider, correlation_id)
    if not result.is_duplicate:
        await work_queue.add_job(db, WebhookJobPayload(
            event_id=event_id, provider=provider, correlation_id=correlation_id, payload={},
        ))
    await db.commit()
    return result


async def _age_claim(db, event_id: str, provider: str, seconds: int) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id, WebhookEvent.provider == provider)
        .values(claimed_at=datetime.now(timezone.utc) - timedelta(seconds=seconds))
    )
    await db.commit()


# ---------------------------------------------------------------------------
# try_begin_processing
# ---------------------------------------------------------------------------


class TestTryBeginProcessing:
    async def test_first_delivery_creates_pending_row(self, db):
        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-1")
        await db.commit()

        assert result.is_duplicate is False
        row = await idempotency.get_event(db, "pay_1", "razorpay")
        assert row.status == "pending"
        assert row.correlation_id == "cid-1"
        assert row.retry_count == 0
        assert row.claimed_at is not None

    async def test_second_delivery_in_flight(self, db):
        await _accept(db, "pay_1")

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2")
        assert result.already_processing is True
        assert result.already_processed is False

    async def test_processed_event_reports_processed(self, db):
        await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-1")
        await idempotency.mark_processed(db, "pay_1", "razorpay")
        await db.commit()

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2")
        assert result.already_processed is True

    async def test_same_event_id_different_provider_is_distinct(self, db):
        await idempotency.try_begin_processing(db, "evt_1", "razorpay", "cid-1")
        result = await idempotency.try_begin_processing(db, "evt_1", "paypal", "cid-2")
        assert result.is_duplicate is False

    async def test_released_row_taken_over(self, db):
        await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-1")
        await idempotency.release(db, "pay_1", "razorpay", "queue down")
        await db.commit()

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2")
        await db.commit()

        assert result.is_duplicate is False
        db.expire_all()
        row = await idempotency.get_event(db, "pay_1", "razorpay")
        assert row.status == "pending"
        assert row.correlation_id == "cid-2"
        assert row.error_message is None

    async def test_stale_pending_claim_taken_over(self, db):
        await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-1", claim_timeout_seconds=300)
        await db.commit()
        await _age_claim(db, "pay_1", "razorpay", 301)

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2", claim_timeout_seconds=300)
        assert result.is_duplicate is False

    async def test_failed_row_with_live_claim_is_duplicate(self, db):
        """A failed row awaiting its retry job is not re-accepted by ingress."""
        await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-1")
        await idempotency.mark_failed(db, "pay_1", "razorpay", "handler error")
        await db.commit()
        await _age_claim(db, "pay_1", "razorpay", 10_000)

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2")
        assert result.already_processing is True

    async def test_recorded_row_without_job_taken_over(self, db):
        """A crash after the row committed but before its job did must not block redelivery."""
        await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-1")
        await db.commit()

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2")
        await db.commit()

        assert result.is_duplicate is False
        db.expire_all()
        row = await idempotency.get_event(db, "pay_1", "razorpay")
        assert row.status == "pending"
        assert row.correlation_id == "cid-2"

    async def test_pending_row_with_processing_job_is_duplicate(self, db):
        await _accept(db, "pay_1")
        assert await work_queue.claim_next_job(db) is not None
        await db.commit()

        result = await idempotency.try_begin_processing(db, "pay_1", "razorpay", "cid-2")
        assert result.already_processing is True

    async def test_concurrent_deliveries_exactly_one_begins(self, db_engine):
        async def attempt(i: int):
            async with async_session_factory() as session:
                return await _accept(session, "pay_RACE", correlation_id=f"cid-{i}")

        results = await asyncio.gather(*(attempt(i) for i in range(5)))
        assert sum(1 for r in results if not r.is_duplicate) == 1
        assert sum(1 for r in results if r.already_processing) == 4


# ---------------------------------------------------------------------------
# claim_for_worker
# ---------------------------------------------------------------------------


class TestClaimForWorker:
    async def test_claims_pending_row(self, db):
        await idempotency.try_begin_processing(db, "m_1", "instagram", "cid")
        claim = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        await db.commit()

        assert claim.outcome == CLAIM_CLAIMED
        assert claim.claim_token
        row = await idempotency.get_event(db, "m_1", "instagram")
        assert row.status == "processing"
        assert row.claim_token == claim.claim_token

    async def test_missing_row_inserted_as_processing(self, db):
        claim = await idempotency.claim_for_worker(db, "m_2", "instagram", "cid")
        await db.commit()
        assert claim.claimed
        assert (await idempotency.get_status(db, "m_2", "instagram")) == "processing"

    async def test_live_processing_claim_is_in_flight(self, db):
        await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        await db.commit()
        claim = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        assert claim.outcome == CLAIM_IN_FLIGHT
        assert claim.claim_token is None

    async def test_stale_processing_claim_reclaimed(self, db):
        first = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        await db.commit()
        await _age_claim(db, "m_1", "instagram", 301)

        second = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid", claim_timeout_seconds=300)
        await db.commit()
        assert second.claimed
        assert second.claim_token != first.claim_token

    async def test_failed_row_reclaimed_for_retry(self, db):
        claim = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        await idempotency.mark_failed(db, "m_1", "instagram", "boom", claim_token=claim.claim_token)
        retry = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        assert retry.claimed

    async def test_processed_row_not_reclaimed(self, db):
        claim = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        await idempotency.mark_processed(db, "m_1", "instagram", claim.claim_token)
        again = await idempotency.claim_for_worker(db, "m_1", "instagram", "cid")
        assert again.outcome == CLAIM_ALREADY_PROCESSED


# ---------------------------------------------------------------------------
# Terminal transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    async def test_mark_processed_sets_timestamp(self, db):
        claim = await idempotency.claim_for_worker(db, "m_1", "facebook", "cid")
        assert await idempotency.mark_processed(db, "m_1", "facebook", claim.claim_token) is True
        await db.commit()

        row = await idempotency.get_event(db, "m_1", "facebook")
        assert row.status == "processed"
        assert row.processed_at is not None
        assert row.claim_token is None

    async def test_mark_failed_increments_retry_count(self, db):
        await idempotency.try_begin_processing(db, "m_1", "facebook", "cid")
        assert await idempotency.mark_failed(db, "m_1", "facebook", "first") == 1
        assert await idempotency.mark_failed(db, "m_1", "facebook", "second") == 2
        await db.commit()

        row = await idempotency.get_event(db, "m_1", "facebook")
        assert row.status == "failed"
        assert row.retry_count == 2
        assert row.error_message == "second"

    async def test_stale_token_cannot_overwrite_new_claim(self, db):
        first = await idempotency.claim_for_worker(db, "m_1", "facebook", "cid")
        await db.commit()
        await _age_claim(db, "m_1", "facebook", 1000)
        second = await idempotency.claim_for_worker(db, "m_1", "facebook", "cid", claim_timeout_seconds=300)
        await db.commit()

        assert await idempotency.mark_processed(db, "m_1", "facebook", first.claim_token) is False
        assert await idempotency.mark_failed(db, "m_1", "facebook", "late", claim_token=first.claim_token) is None
        assert await idempotency.mark_processed(db, "m_1", "facebook", second.claim_token) is True

    async def test_release_never_touches_processed_row(self, db):
        claim = await idempotency.claim_for_worker(db, "m_1", "facebook", "cid")
        await idempotency.mark_processed(db, "m_1", "facebook", claim.claim_token)
        await idempotency.release(db, "m_1", "facebook", "late release")
        await db.commit()
        assert (await idempotency.get_status(db, "m_1", "facebook")) == "processed"

    async def test_find_stale_claims(self, db):
        await idempotency.try_begin_processing(db, "old", "whatsapp", "cid")
        await idempotency.try_begin_processing(db, "fresh", "whatsapp", "cid")
        await db.commit()
        await _age_claim(db, "old", "whatsapp", 600)

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=300)
        stale = await idempotency.find_stale_claims(db, cutoff)
        assert [row.event_id for row in stale] == ["old"]
