"""
Error taxonomy for the webhook pipeline.

Ingress-side errors (unauthorized, duplicate, infrastructure) never reach the
worker. Worker-side errors are ProcessingFailure subclasses raised by business
handlers; anything else a handler raises is treated as transient.
"""


class WebhookIntakeError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(WebhookIntakeError):
    """Fatal misconfiguration - the process must not serve webhook traffic."""


class UnauthorizedWebhook(WebhookIntakeError):
    """Signature missing or invalid."""


class DuplicateEvent(WebhookIntakeError):
    """Event already processed or in flight. Surfaced to callers as success."""


class InfrastructureUnavailable(WebhookIntakeError):
    """Idempotency store or work queue unreachable on the ack path."""


class ProcessingFailure(WebhookIntakeError):
    """Raised by business handlers to classify a failure."""

    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransientProcessingFailure(ProcessingFailure):
    """Retry with backoff until the retry ceiling."""

    retryable = True


class PermanentProcessingFailure(ProcessingFailure):
    """Skip remaining retries and dead-letter immediately."""

    retryable = False
