"""
Business handler registry.

A handler is `async def handler(provider: str, payload: Any) -> None`. It
signals failures with TransientProcessingFailure (retry with backoff) or
PermanentProcessingFailure (dead-letter now); any other exception counts as
transient. The worker sets the correlation and event ids in context before
calling it.

The default handler normalizes the payload through the provider adapter and
publishes the result for the booking and payment services.
"""
import logging
from typing import Any, Awaitable, Callable, Optional

from webhook_intake.errors import PermanentProcessingFailure
from webhook_intake.providers import get_adapter
from webhook_intake.services.event_bus import publish_business_event
from webhook_intake.utils.logging import get_correlation_id, get_event_id

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[None]]


async def default_handler(provider: str, payload: Any) -> None:
    adapter = get_adapter(provider)
    if adapter is None:
        raise PermanentProcessingFailure(f"No adapter for provider {provider}")

    try:
        event = adapter.parse_event(
            payload,
            event_id=get_event_id() or "",
            correlation_id=get_correlation_id() or "",
        )
    except (AttributeError, TypeError, KeyError, ValueError) as e:
        # Malformed payloads do not get better on retry (ValueError covers pydantic validation)
        raise PermanentProcessingFailure(
            f"Malformed {provider} payload: {type(e).__name__}"
        ) from e
    if event is None:
        logger.info("Webhook not consumed by booking flow, acknowledged", extra={"provider": provider})
        return

    await publish_business_event(event)


class HandlerRegistry:
    """Per-provider business handlers with a shared default."""

    def __init__(self, default: Optional[Handler] = default_handler):
        self._handlers: dict[str, Handler] = {}
        self._default = default

    def register(self, provider: str, handler: Handler) -> None:
        self._handlers[provider] = handler

    def unregister(self, provider: str) -> None:
        self._handlers.pop(provider, None)

    def get(self, provider: str) -> Optional[Handler]:
        return self._handlers.get(provider, self._default)


handler_registry = HandlerRegistry()
