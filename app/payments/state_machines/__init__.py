"""
State machine enums and helpers for payment models.
"""

from payments.state_machines.states import (
    TERMINAL_PAYMENT_STATUSES,
    BillingInterval,
    PaymentProviderId,
    PaymentPurpose,
    PaymentStatus,
    PaymentType,
    TransactionType,
    WebhookEventStatus,
)

__all__ = [
    "BillingInterval",
    "PaymentProviderId",
    "PaymentPurpose",
    "PaymentStatus",
    "PaymentType",
    "TERMINAL_PAYMENT_STATUSES",
    "TransactionType",
    "WebhookEventStatus",
]
