"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
import base64
import binascii
from functools import lru_cache

from pydantic_settings import BaseSettings

from webhook_intake.errors import ConfigurationError

ENCRYPTION_KEY_BYTES = 32
# Meta gives up on a delivery after 20 s
INGRESS_ACK_BUDGET_SECONDS = 20.0


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Meta family (Facebook / Instagram / WhatsApp)
    meta_app_secret: str = ""
    facebook_app_secret: str = ""
    instagram_app_secret: str = ""
    whatsapp_app_secret: str = ""
    meta_verify_token: str = ""

    # Payment gateways
    razorpay_webhook_secret: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_mode: str = "sandbox"  # sandbox | live

    # Dead letter encryption (base64, 32 bytes). Mandatory when webhooks are enabled.
    encryption_key: str = ""
    webhooks_enabled: bool = True

    # Retry policy
    webhook_max_retries: int = 3
    webhook_retry_backoff_minutes: str = "1,5,15"  # comma-separated, one entry per retry

    # Timeouts
    # Ack path: every round trip is bounded and the sum stays under INGRESS_ACK_BUDGET_SECONDS
    ingress_hint_timeout_seconds: float = 0.5
    ingress_store_timeout_seconds: float = 3.0
    ingress_dead_letter_timeout_seconds: float = 3.0
    ingress_audit_timeout_seconds: float = 1.0
    meta_handler_timeout_seconds: float = 8.0
    payment_handler_timeout_seconds: float = 15.0
    claim_timeout_seconds: int = 300

    # Worker pool
    webhook_worker_concurrency: int = 5
    worker_poll_interval_seconds: int = 10
    claim_sweep_interval_seconds: int = 60

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def backoff_schedule(self) -> list[int]:
        return [int(part) for part in self.webhook_retry_backoff_minutes.split(",") if part.strip()]

    def secret_for(self, provider: str) -> str:
        """Signing secret for a provider. Meta platforms fall back to META_APP_SECRET."""
        if provider == "facebook":
            return self.facebook_app_secret or self.meta_app_secret
        if provider == "instagram":
            return self.instagram_app_secret or self.meta_app_secret
        if provider == "whatsapp":
            return self.whatsapp_app_secret or self.meta_app_secret
        if provider == "razorpay":
            return self.razorpay_webhook_secret
        if provider == "paypal":
            return self.paypal_webhook_id
        return ""

    def handler_timeout_for(self, provider: str) -> float:
        if provider in ("razorpay", "paypal"):
            return self.payment_handler_timeout_seconds
        return self.meta_handler_timeout_seconds

    def backoff_seconds(self, retry_count: int) -> int:
        """Delay before the next attempt after `retry_count` failures (1-based)."""
        schedule = self.backoff_schedule() or [1]
        idx = min(max(retry_count, 1) - 1, len(schedule) - 1)
        return schedule[idx] * 60


def decode_encryption_key(raw: str) -> bytes:
    """Decode and length-check the dead letter key. Raises ConfigurationError."""
    if not raw:
        raise ConfigurationError("ENCRYPTION_KEY is not set")
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError("ENCRYPTION_KEY must be base64-encoded")
    if len(key) != ENCRYPTION_KEY_BYTES:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must decode to {ENCRYPTION_KEY_BYTES} bytes, got {len(key)}"
        )
    return key


def validate_startup_config(settings: Settings) -> None:
    """
    Fatal configuration checks, run once before the webhook routes are bound.
    Raises ConfigurationError so the process refuses to start.
    """
    if not settings.webhooks_enabled:
        return

    decode_encryption_key(settings.encryption_key)

    if settings.webhook_max_retries < 1:
        raise ConfigurationError("WEBHOOK_MAX_RETRIES must be at least 1")

    longest_handler = max(
        settings.meta_handler_timeout_seconds,
        settings.payment_handler_timeout_seconds,
    )
    if settings.claim_timeout_seconds <= longest_handler:
        raise ConfigurationError(
            "CLAIM_TIMEOUT_SECONDS must exceed the longest handler timeout "
            f"({longest_handler}s), otherwise a live claim can be reclaimed"
        )

    ack_path = (
        settings.ingress_hint_timeout_seconds
        + settings.ingress_store_timeout_seconds
        + settings.ingress_dead_letter_timeout_seconds
        + settings.ingress_audit_timeout_seconds
    )
    if ack_path >= INGRESS_ACK_BUDGET_SECONDS:
        raise ConfigurationError(
            f"Ingress timeouts add up to {ack_path}s; they must stay under "
            f"{INGRESS_ACK_BUDGET_SECONDS}s so providers get an answer before they give up"
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
