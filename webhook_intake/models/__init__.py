"""
Database models - import all models here so Alembic can discover them.
"""
from webhook_intake.models.webhook_event import WebhookEvent
from webhook_intake.models.dead_letter import DeadLetterEntry
from webhook_intake.models.audit_log import AuditLog
from webhook_intake.models.webhook_job import WebhookJob

__all__ = [
    "WebhookEvent",
    "DeadLetterEntry",
    "AuditLog",
    "WebhookJob",
]
