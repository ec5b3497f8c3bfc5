"""
Abstract provider interface - every upstream webhook source implements this.
Adapters are stateless; secrets and timeouts come from Settings on each call.
"""
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from webhook_intake.config import Settings
from webhook_intake.utils.event_id import extract_event_id


class ProviderAdapter(ABC):
    """Verify, identify and parse one provider's webhooks."""

    name: str = ""
    signature_header: str = ""

    @abstractmethod
    async def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        settings: Settings,
    ) -> bool:
        """
        Check authenticity over the exact raw bytes.
        Must return False (never raise) for anything short of a valid signature.
        """
        ...

    def extract_event_id(self, payload: Any, now: Optional[float] = None) -> str:
        return extract_event_id(self.name, payload, now=now)

    @abstractmethod
    def parse_event(
        self,
        payload: Any,
        event_id: str,
        correlation_id: str,
    ) -> Optional[BaseModel]:
        """
        Normalize a payload into a business event.
        Returns None for events the booking system does not consume.
        Raises PermanentProcessingFailure when a consumed event is malformed.
        """
        ...

    def handler_timeout(self, settings: Settings) -> float:
        return settings.handler_timeout_for(self.name)


def lower_headers(headers: Mapping[str, str]) -> dict:
    return {str(k).lower(): v for k, v in headers.items()}


def as_dict(value: Any) -> dict:
    """Payload fields are untrusted JSON: anything that is not an object reads as empty."""
    return value if isinstance(value, dict) else {}
