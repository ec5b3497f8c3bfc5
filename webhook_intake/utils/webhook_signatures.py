"""
Webhook signature validation - verify incoming webhooks are authentic.

Supported providers:
- Meta (Facebook, Instagram, WhatsApp): HMAC-SHA256 via X-Hub-Signature-256 ("sha256=<hex>")
- Razorpay: HMAC-SHA256 hex via X-Razorpay-Signature
- PayPal: verified remotely, see webhook_intake.providers.paypal

Every check is computed over the exact raw request bytes, before any parsing.
Signatures and bodies are never logged.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

META_SIGNATURE_HEADER = "X-Hub-Signature-256"
RAZORPAY_SIGNATURE_HEADER = "X-Razorpay-Signature"

META_PROVIDERS = ("facebook", "instagram", "whatsapp")


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: Optional[str] = "sha256=",
) -> bool:
    """
    Validate an HMAC-SHA256 webhook signature in constant time.
    When header_prefix is set the signature must carry it.
    Returns True if valid, False if invalid or malformed.
    """
    if not secret or not signature:
        return False

    sig = signature.strip()
    if header_prefix:
        if not sig.startswith(header_prefix):
            return False
        sig = sig[len(header_prefix):]

    if not sig:
        return False

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), sig.lower().encode("ascii"))
    except (UnicodeEncodeError, TypeError) as e:
        logger.warning("HMAC-SHA256 validation error: %s", type(e).__name__)
        return False


def verify_signature(
    provider: str,
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Pure signature check for the HMAC providers.
    Missing header, missing secret, malformed header or any mismatch -> False.
    """
    if not signature_header or not secret:
        return False

    if provider in META_PROVIDERS:
        return validate_hmac_sha256(secret, signature_header, raw_body, header_prefix="sha256=")

    if provider == "razorpay":
        return validate_hmac_sha256(secret, signature_header, raw_body, header_prefix=None)

    return False


def sign_hmac_sha256(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of body, as Razorpay sends it."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
