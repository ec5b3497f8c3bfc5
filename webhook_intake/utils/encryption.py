"""
Encryption for dead-lettered webhook payloads.
AES-256-GCM with the configured ENCRYPTION_KEY (base64, 32 bytes).

Stored layout: 12-byte random nonce || ciphertext || 16-byte tag.
Associated data binds a ciphertext to its (provider, event_id) row.
"""
import json
import logging
import os
from functools import lru_cache
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from webhook_intake.config import decode_encryption_key
from webhook_intake.errors import ConfigurationError

logger = logging.getLogger(__name__)

NONCE_BYTES = 12


@lru_cache()
def _get_cipher() -> AESGCM:
    """Cipher for the configured key. Raises ConfigurationError on a bad key."""
    from webhook_intake.config import get_settings
    return AESGCM(decode_encryption_key(get_settings().encryption_key))


def reset_cipher_cache() -> None:
    _get_cipher.cache_clear()


def _associated_data(provider: str, event_id: str) -> bytes:
    return f"{provider}:{event_id}".encode("utf-8")


def encrypt_payload(payload: Any, provider: str, event_id: str) -> bytes:
    """Serialize and encrypt a webhook payload. Never falls back to plaintext."""
    plaintext = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
    nonce = os.urandom(NONCE_BYTES)
    return nonce + _get_cipher().encrypt(nonce, plaintext, _associated_data(provider, event_id))


def decrypt_payload(blob: bytes, provider: str, event_id: str) -> Any:
    """
    Decrypt a dead-letter payload back into its JSON value.
    Raises ConfigurationError if the blob was not produced with the current key
    for this (provider, event_id).
    """
    if len(blob) <= NONCE_BYTES:
        raise ConfigurationError("Encrypted payload is truncated")
    nonce, ciphertext = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
    try:
        plaintext = _get_cipher().decrypt(nonce, ciphertext, _associated_data(provider, event_id))
    except InvalidTag:
        logger.error(
            "Dead letter decryption failed (wrong key or tampered row)",
            extra={"event_id": event_id, "provider": provider},
        )
        raise ConfigurationError("Dead letter payload could not be decrypted")
    return json.loads(plaintext.decode("utf-8"))
