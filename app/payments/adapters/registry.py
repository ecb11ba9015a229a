"""
Provider registry.

Builds one adapter per configured provider from Django settings. A
provider with no credentials at all is skipped so a deployment can run
with only Stripe or only Cryptomus; partially configured providers raise
ProviderConfigurationError from the adapter constructor.

Usage:
    from payments.adapters.registry import get_provider_registry

    providers = get_provider_registry()
    adapter = providers["stripe"]
"""

from __future__ import annotations

import logging
import threading

from django.conf import settings as django_settings

from payments.adapters.base import PaymentProvider
from payments.adapters.cryptomus_adapter import DEFAULT_API_BASE, CryptomusAdapter
from payments.adapters.stripe_adapter import StripeAdapter
from payments.state_machines import PaymentProviderId

logger = logging.getLogger(__name__)

_registry: dict[str, PaymentProvider] | None = None
_registry_lock = threading.Lock()


def build_provider_registry(settings=None) -> dict[str, PaymentProvider]:
    """
    Construct adapters for every provider that has credentials.

    Args:
        settings: Settings object to read (defaults to django.conf.settings)

    Raises:
        ProviderConfigurationError: A provider is only partially configured
    """
    settings = settings or django_settings
    providers: dict[str, PaymentProvider] = {}

    stripe_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if stripe_key:
        providers[PaymentProviderId.STRIPE] = StripeAdapter(
            api_key=stripe_key,
            webhook_secret=getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
            timeout_seconds=getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10),
            max_retries=getattr(settings, "STRIPE_MAX_RETRIES", 3),
        )
    else:
        logger.warning("Stripe is not configured, provider disabled")

    merchant_id = getattr(settings, "CRYPTOMUS_MERCHANT_ID", "")
    payment_key = getattr(settings, "CRYPTOMUS_PAYMENT_KEY", "")
    if merchant_id or payment_key:
        providers[PaymentProviderId.CRYPTOMUS] = CryptomusAdapter(
            merchant_id=merchant_id,
            payment_key=payment_key,
            api_base=getattr(settings, "CRYPTOMUS_API_BASE", DEFAULT_API_BASE),
            timeout_seconds=getattr(settings, "CRYPTOMUS_API_TIMEOUT_SECONDS", 10),
            payment_lifetime_seconds=getattr(settings, "CRYPTOMUS_PAYMENT_LIFETIME_SECONDS", 3600),
        )
    else:
        logger.warning("Cryptomus is not configured, provider disabled")

    logger.info("Payment providers registered", extra={"providers": sorted(providers)})
    return providers


def get_provider_registry() -> dict[str, PaymentProvider]:
    """Return the process-wide registry, building it on first use."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = build_provider_registry()
    return _registry


def reset_provider_registry() -> None:
    """Drop the cached registry (tests, settings reload)."""
    global _registry
    with _registry_lock:
        _registry = None


__all__ = ["build_provider_registry", "get_provider_registry", "reset_provider_registry"]
