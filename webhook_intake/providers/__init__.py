"""
Provider registry - closed set of adapters keyed by provider name.
"""
from typing import Optional

from webhook_intake.providers.base import ProviderAdapter
from webhook_intake.providers.meta import MetaAdapter, verify_subscription
from webhook_intake.providers.paypal import PayPalAdapter
from webhook_intake.providers.razorpay import RazorpayAdapter
from webhook_intake.utils.webhook_signatures import META_PROVIDERS

PROVIDERS: dict[str, ProviderAdapter] = {
    "facebook": MetaAdapter("facebook"),
    "instagram": MetaAdapter("instagram"),
    "whatsapp": MetaAdapter("whatsapp"),
    "razorpay": RazorpayAdapter(),
    "paypal": PayPalAdapter(),
}


def get_adapter(provider: str) -> Optional[ProviderAdapter]:
    return PROVIDERS.get(provider)


__all__ = [
    "PROVIDERS",
    "META_PROVIDERS",
    "ProviderAdapter",
    "get_adapter",
    "verify_subscription",
]
