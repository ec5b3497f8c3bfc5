"""
Business event bus via Redis - hands normalized webhook events to the
booking and payment services.

Events go to a Redis list (durable until consumed) and are mirrored on a
pub/sub channel for live subscribers. Unlike ingress hints, a publish failure
here is a processing failure: the event would otherwise be lost. A full list
is one too, so a stalled consumer backs jobs up into retry and the dead
letter instead of growing Redis without bound.
"""
import json
import logging

from pydantic import BaseModel

from webhook_intake.errors import TransientProcessingFailure

logger = logging.getLogger(__name__)

CHANNEL = "webhook_intake:business_events"
EVENT_LIST_KEY = "webhook_intake:business_events:pending"
EVENT_LIST_MAX = 10_000  # pending events before publishers are pushed back


async def publish_business_event(event: BaseModel) -> None:
    """Raises TransientProcessingFailure if Redis does not take the event."""
    payload = event.model_dump_json()
    try:
        from webhook_intake.utils.dedup import get_redis
        redis = await get_redis()
        backlog = await redis.llen(EVENT_LIST_KEY)
        if backlog < EVENT_LIST_MAX:
            await redis.lpush(EVENT_LIST_KEY, payload)
            await redis.publish(CHANNEL, payload)
    except Exception as e:
        raise TransientProcessingFailure(f"Business event publish failed: {type(e).__name__}") from e

    if backlog >= EVENT_LIST_MAX:
        logger.warning("Business event backlog full (%d pending), consumer is not draining", backlog)
        raise TransientProcessingFailure(f"Business event backlog full ({backlog} pending)")

    logger.debug("Business event published: %s", getattr(event, "kind", type(event).__name__))


async def drain_business_events(max_events: int = 50) -> list[dict]:
    """Pop pending events oldest-first. Used by consumers and operator tooling."""
    events: list[dict] = []
    try:
        from webhook_intake.utils.dedup import get_redis
        redis = await get_redis()
        for _ in range(max_events):
            raw = await redis.rpop(EVENT_LIST_KEY)
            if raw is None:
                break
            try:
                events.append(json.loads(raw if isinstance(raw, str) else raw.decode()))
            except (json.JSONDecodeError, UnicodeDecodeError):
                continue
    except Exception as e:
        logger.warning("Failed to drain business events: %s", str(e))
    return events
