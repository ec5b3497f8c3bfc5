"""
Meta platforms - Facebook Messenger, Instagram DMs, WhatsApp Business.

All three sign with X-Hub-Signature-256 ("sha256=<hex>") using the app secret
and share the hub.* GET subscription handshake.
"""
import hmac
import logging
from typing import Any, Mapping, Optional

from webhook_intake.config import Settings
from webhook_intake.providers.base import ProviderAdapter, as_dict, lower_headers
from webhook_intake.schemas.webhooks import InboundMessage
from webhook_intake.utils.webhook_signatures import META_SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)


def verify_subscription(params: Mapping[str, str], verify_token: str) -> Optional[str]:
    """
    Meta subscription handshake. Returns hub.challenge to echo, or None to reject.
    """
    if not verify_token:
        return None
    if params.get("hub.mode") != "subscribe":
        return None
    supplied = params.get("hub.verify_token") or ""
    if not hmac.compare_digest(supplied.encode("utf-8"), verify_token.encode("utf-8")):
        return None
    return params.get("hub.challenge")




def _first(seq: Any) -> Any:
    if isinstance(seq, list) and seq:
        return seq[0]
    return None


def _items(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _id(value: Any) -> Optional[str]:
    ident = as_dict(value).get("id")
    if ident is None or ident == "":
        return None
    return str(ident)


class MetaAdapter(ProviderAdapter):
    signature_header = META_SIGNATURE_HEADER

    def __init__(self, name: str):
        self.name = name

    async def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: Settings) -> bool:
        signature = lower_headers(headers).get(self.signature_header.lower())
        return verify_signature(self.name, raw_body, signature, settings.secret_for(self.name))

    def parse_event(self, payload: Any, event_id: str, correlation_id: str) -> Optional[InboundMessage]:
        entries = _items(as_dict(payload).get("entry"))
        if not entries:
            return None
        if self.name == "whatsapp":
            return self._parse_whatsapp(entries[0], event_id, correlation_id)
        # Messenger-style entry[].messaging[] first, then Graph API entry[].changes[]
        return (
            self._parse_messaging(entries, event_id, correlation_id)
            or self._parse_changes(entries, event_id, correlation_id)
        )

    def _message(
        self,
        sender_id: str,
        recipient_id: Optional[str],
        body: dict,
        edited: bool,
        event_id: str,
        correlation_id: str,
    ) -> InboundMessage:
        text = body.get("text")
        mid = body.get("mid")
        return InboundMessage(
            provider=self.name,
            event_id=event_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            message_id=str(mid) if mid else None,
            text=text if isinstance(text, str) else None,
            edited=edited,
            correlation_id=correlation_id,
        )

    def _parse_messaging(self, entries: list[dict], event_id: str, correlation_id: str) -> Optional[InboundMessage]:
        for entry in entries:
            for item in _items(entry.get("messaging")):
                message = as_dict(item.get("message"))
                edit = as_dict(item.get("message_edit"))
                if not message and not edit:
                    # reactions, reads and postbacks carry no text for the booking flow
                    continue
                if message.get("is_echo") or item.get("is_echo") or item.get("is_self"):
                    continue

                sender_id = _id(item.get("sender")) or _id(item.get("from"))
                if not sender_id and edit:
                    # edits sometimes arrive with the sender on the entry or the edit itself
                    sender_id = (
                        _id(entry.get("from")) or _id(entry.get("sender"))
                        or _id(edit.get("sender")) or _id(edit.get("from"))
                    )
                if not sender_id:
                    continue

                recipient_id = _id(item.get("recipient")) or _id(entry)
                if message:
                    return self._message(sender_id, recipient_id, message, False, event_id, correlation_id)
                return self._message(sender_id, recipient_id, edit, True, event_id, correlation_id)
        return None

    def _parse_changes(self, entries: list[dict], event_id: str, correlation_id: str) -> Optional[InboundMessage]:
        for entry in entries:
            for change in _items(entry.get("changes")):
                value = as_dict(change.get("value"))
                sender_id = _id(value.get("sender"))
                if not sender_id or value.get("is_self"):
                    continue
                recipient_id = _id(value.get("recipient")) or _id(entry)

                field = change.get("field")
                message = as_dict(value.get("message"))
                edit = as_dict(value.get("message_edit"))
                if field == "messages" and message and not message.get("is_self"):
                    return self._message(sender_id, recipient_id, message, False, event_id, correlation_id)
                if field == "message_edit" and edit:
                    return self._message(sender_id, recipient_id, edit, True, event_id, correlation_id)
        return None

    def _parse_whatsapp(self, entry: dict, event_id: str, correlation_id: str) -> Optional[InboundMessage]:
        value = as_dict(as_dict(_first(entry.get("changes"))).get("value"))
        message = as_dict(_first(value.get("messages")))
        if not message.get("from"):
            # status callbacks (sent / delivered / read)
            return None
        body = as_dict(message.get("text")).get("body")
        return InboundMessage(
            provider=self.name,
            event_id=event_id,
            sender_id=str(message["from"]),
            recipient_id=as_dict(value.get("metadata")).get("phone_number_id"),
            message_id=message.get("id"),
            text=body if isinstance(body, str) else None,
            correlation_id=correlation_id,
        )
