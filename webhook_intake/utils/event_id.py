"""
Event identity extraction for idempotency.

Platform-native ids are preferred. When a payload carries none, a fallback id
is derived from the normalized payload plus a 5-minute time bucket so that a
provider retry of the same content inside the window collapses to one event.
"""
import hashlib
import json
import time
from typing import Any, Callable, Optional

TIMESTAMP_BUCKET_MS = 300_000  # 5 minutes

# Keys that vary between deliveries of the same event
VOLATILE_KEYS = frozenset({"time", "timestamp", "created_at", "updated_at", "received_at"})

INSTAGRAM_MID_FIELDS = ("message", "reaction", "postback", "read", "message_edit")


def normalize_payload(payload: Any) -> Any:
    """Drop volatile keys at every depth and sort object keys."""
    if isinstance(payload, dict):
        return {
            key: normalize_payload(payload[key])
            for key in sorted(payload)
            if key not in VOLATILE_KEYS
        }
    if isinstance(payload, list):
        return [normalize_payload(item) for item in payload]
    return payload


def canonical_json(payload: Any) -> str:
    return json.dumps(
        normalize_payload(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def time_bucket(now: Optional[float] = None) -> int:
    """5-minute bucket index for a unix timestamp in seconds."""
    now_ms = int((time.time() if now is None else now) * 1000)
    return now_ms // TIMESTAMP_BUCKET_MS


def fallback_event_id(payload: Any, now: Optional[float] = None) -> str:
    """sha256 hex of canonical normalized JSON followed by the bucket index."""
    digest = hashlib.sha256()
    digest.update(canonical_json(payload).encode("utf-8"))
    digest.update(str(time_bucket(now)).encode("ascii"))
    return digest.hexdigest()


def _first(seq: Any) -> Any:
    if isinstance(seq, list) and seq:
        return seq[0]
    return None


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _as_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    value = str(value)
    return value or None


def extract_facebook_event_id(payload: dict) -> Optional[str]:
    entry = _first(payload.get("entry"))
    if not isinstance(entry, dict):
        return None
    messaging = _first(entry.get("messaging"))
    return _as_id(_get(messaging, "message", "mid")) or _as_id(entry.get("id"))


def _instagram_mid(messaging: Any) -> Optional[str]:
    if not isinstance(messaging, list):
        return None
    for item in messaging:
        if not isinstance(item, dict):
            continue
        for field in INSTAGRAM_MID_FIELDS:
            mid = _as_id(_get(item, field, "mid"))
            if mid:
                return mid
    return None


def extract_instagram_event_id(payload: dict) -> Optional[str]:
    entries = payload.get("entry")
    entry = _first(entries)
    if not isinstance(entry, dict):
        return None

    mid = _instagram_mid(entry.get("messaging"))
    if mid:
        return mid

    for change in entry.get("changes") or []:
        if isinstance(change, dict) and change.get("field") == "messages":
            mid = _as_id(_get(change, "value", "message", "mid"))
            if mid:
                return mid

    # Batched deliveries can carry the message in a later entry
    for other in entries[1:]:
        if isinstance(other, dict):
            mid = _instagram_mid(other.get("messaging"))
            if mid:
                return mid

    return _as_id(entry.get("id"))


def extract_whatsapp_event_id(payload: dict) -> Optional[str]:
    entry = _first(payload.get("entry"))
    change = _first(_get(entry, "changes"))
    message = _first(_get(change, "value", "messages"))
    return _as_id(_get(message, "id"))


def extract_razorpay_event_id(payload: dict) -> Optional[str]:
    return (
        _as_id(_get(payload, "payload", "payment", "entity", "id"))
        or _as_id(_get(payload, "payload", "payment_link", "entity", "id"))
    )


def extract_paypal_event_id(payload: dict) -> Optional[str]:
    return _as_id(payload.get("id")) or _as_id(_get(payload, "resource", "id"))


EXTRACTORS: dict[str, Callable[[dict], Optional[str]]] = {
    "facebook": extract_facebook_event_id,
    "instagram": extract_instagram_event_id,
    "whatsapp": extract_whatsapp_event_id,
    "razorpay": extract_razorpay_event_id,
    "paypal": extract_paypal_event_id,
}


def extract_event_id(provider: str, payload: Any, now: Optional[float] = None) -> str:
    """
    Platform id for the provider, falling back to the bucketed content hash.
    Always returns a non-empty string.
    """
    extractor = EXTRACTORS.get(provider)
    if extractor is not None and isinstance(payload, dict):
        event_id = extractor(payload)
        if event_id:
            return event_id
    return fallback_event_id(payload, now=now)
