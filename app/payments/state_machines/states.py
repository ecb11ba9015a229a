"""
Enums shared by payment models, provider adapters and the API.

These are Django TextChoices so they double as model field choices and
admin filters while comparing equal to their plain string values.

State Machines Overview:

PaymentIntent Status:
    pending → completed → refunded
    pending → failed
    pending → canceled

WebhookEvent Processing Status:
    pending → processing → processed
    pending → processing → failed (retried)
"""

from django.db import models


class PaymentStatus(models.TextChoices):
    """
    Provider-agnostic payment status.

    Every adapter maps its own vocabulary onto these values. Terminal
    states are COMPLETED, FAILED, CANCELED and REFUNDED; REFUNDED is only
    reachable from COMPLETED.
    """

    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"
    REFUNDED = "refunded", "Refunded"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
        PaymentStatus.REFUNDED,
    }
)


class PaymentType(models.TextChoices):
    """Billing mode requested from a provider."""

    ONE_TIME = "one_time", "One-time"
    RECURRING = "recurring", "Recurring"


class PaymentPurpose(models.TextChoices):
    """What a PaymentIntent pays for; decides the completion side effect."""

    WALLET_DEPOSIT = "wallet_deposit", "Wallet deposit"
    PROXY_PURCHASE = "proxy_purchase", "Proxy purchase"


class PaymentProviderId(models.TextChoices):
    """Registered payment processors."""

    STRIPE = "stripe", "Stripe"
    CRYPTOMUS = "cryptomus", "Cryptomus"


class BillingInterval(models.TextChoices):
    """Recurrence unit for subscriptions."""

    DAY = "day", "Day"
    WEEK = "week", "Week"
    MONTH = "month", "Month"
    YEAR = "year", "Year"


class TransactionType(models.TextChoices):
    """
    Ledger entry kind for TransactionRecord.

    Only DEPOSIT and PURCHASE are written by the payment flow; refunds are
    tracked on PaymentIntent.status.
    """

    DEPOSIT = "deposit", "Deposit"
    PURCHASE = "purchase", "Purchase"
    REFUND = "refund", "Refund"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED (can retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


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
