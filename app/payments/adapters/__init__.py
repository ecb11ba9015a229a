"""
Payment provider adapters.

Every external payment API call goes through one of these adapters. They
share the PaymentProvider contract from ``base`` and never write to the
database.

Usage:
    from payments.adapters import get_provider_registry, PaymentMetadata

    adapter = get_provider_registry()["stripe"]
    response = adapter.create_one_time_payment(
        user,
        PaymentMetadata(order_id="order_1", user_id="42", amount=Decimal("50.00"), currency="USD"),
        success_url,
        cancel_url,
    )
"""

from payments.adapters.base import (
    CancelPaymentResponse,
    CreatePaymentResponse,
    NormalizedWebhookEvent,
    PaymentMetadata,
    PaymentProvider,
    RecurringPaymentMetadata,
    RefundPaymentResponse,
    SubscriptionUpdate,
    VerifyPaymentResponse,
    from_minor_units,
    to_minor_units,
)
from payments.adapters.cryptomus_adapter import CryptomusAdapter
from payments.adapters.registry import (
    build_provider_registry,
    get_provider_registry,
    reset_provider_registry,
)
from payments.adapters.stripe_adapter import StripeAdapter

__all__ = [
    "CancelPaymentResponse",
    "CreatePaymentResponse",
    "CryptomusAdapter",
    "NormalizedWebhookEvent",
    "PaymentMetadata",
    "PaymentProvider",
    "RecurringPaymentMetadata",
    "RefundPaymentResponse",
    "StripeAdapter",
    "SubscriptionUpdate",
    "VerifyPaymentResponse",
    "build_provider_registry",
    "get_provider_registry",
    "reset_provider_registry",
    "from_minor_units",
    "to_minor_units",
]
