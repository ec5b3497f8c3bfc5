"""
Audit recorder - append-only lifecycle records for webhooks.
Metadata only (event_id, provider). Audit failures are logged, never raised:
losing an audit row must not change the outcome of a webhook.
"""
import logging
from typing import Optional

from webhook_intake.database import async_session_factory
from webhook_intake.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

ACTION_RECEIVED = "webhook_received"
ACTION_PROCESSED = "webhook_processed"
ACTION_FAILED = "webhook_failed"
ACTION_DEAD_LETTER_STORED = "dead_letter_stored"

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


async def record_webhook_audit(
    action: str,
    correlation_id: str,
    event_id: str,
    provider: str,
    status: str = STATUS_SUCCESS,
    error_message: Optional[str] = None,
    resource_type: str = "webhook",
) -> None:
    try:
        async with async_session_factory() as db:
            db.add(AuditLog(
                correlation_id=correlation_id,
                resource_type=resource_type,
                action=action,
                status=status,
                error_message=error_message[:2000] if error_message else None,
                event_metadata={"event_id": event_id, "provider": provider},
            ))
            await db.commit()
    except Exception as e:
        logger.error(
            "Audit write failed for %s: %s", action, str(e),
            extra={"event_id": event_id, "provider": provider},
        )
