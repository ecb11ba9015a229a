"""
Provider contract shared by every payment backend.

Each adapter turns one processor's API into the same small set of
operations and the same response shapes, so the orchestration layer never
branches on provider vocabulary.

Rules every adapter follows:
- Provider-reported failures (declines, 4xx/5xx, timeouts) come back as
  ``success=False`` responses with a readable ``error``. They are never
  raised past the adapter.
- Configuration problems (missing credentials) raise
  ProviderConfigurationError at construction.
- ``handle_webhook`` raises SignatureError when the signature is absent
  or wrong. Nothing downstream may act on an unverified payload.
- Adapters never touch the database.

Amounts:
    Metadata and responses carry Decimal amounts in major units (27.50).
    Adapters that talk minor units convert with to_minor_units /
    from_minor_units at the HTTP boundary and nowhere else.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from payments.state_machines import BillingInterval, PaymentStatus

CURRENCY_PATTERN = re.compile(r"[A-Za-z]{3}")

CENT = Decimal("0.01")


# =============================================================================
# Amount Helpers
# =============================================================================


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Rounds half up to the nearest cent first, so Decimal("27.505")
    becomes 2751.

    Example:
        to_minor_units(Decimal("27.50"))  # 2750
    """
    return int((Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units back to a 2-place Decimal (2750 -> 27.50)."""
    return (Decimal(int(amount)) / 100).quantize(CENT)


# =============================================================================
# Request Types
# =============================================================================


@dataclass
class PaymentMetadata:
    """
    Order context handed to an adapter when creating a payment.

    Attributes:
        order_id: Internal order id, echoed back by the provider
        user_id: Owning account
        amount: Amount in major units, must be positive
        currency: ISO 4217 code
        customer_email: Prefills the hosted checkout where supported
        description: Line item / invoice description
        callback_url: Server-to-server notification URL (Cryptomus)
        extra: Additional key/values to attach to provider metadata
    """

    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    customer_email: str = ""
    description: str = ""
    callback_url: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.amount = Decimal(str(self.amount))
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.currency or not CURRENCY_PATTERN.fullmatch(self.currency):
            raise ValueError("currency must be a 3-letter ISO code")
        if not self.order_id:
            raise ValueError("order_id is required")

    def provider_metadata(self, provider: str) -> dict[str, str]:
        """Flat string map attached to provider objects for correlation."""
        return {
            **self.extra,
            "order_id": self.order_id,
            "user_id": str(self.user_id),
            "provider": provider,
        }


@dataclass
class RecurringPaymentMetadata(PaymentMetadata):
    """
    Metadata for a subscription-style payment.

    Attributes:
        interval: Billing interval (day/week/month/year)
        interval_count: Number of intervals between charges, at least 1
        trial_period_days: Optional free trial before the first charge
    """

    interval: str = BillingInterval.MONTH
    interval_count: int = 1
    trial_period_days: int | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.interval not in BillingInterval.values:
            raise ValueError(f"interval must be one of {BillingInterval.values}")
        if self.interval_count < 1:
            raise ValueError("interval_count must be at least 1")
        if self.trial_period_days is not None and self.trial_period_days < 0:
            raise ValueError("trial_period_days cannot be negative")


# =============================================================================
# Response Types
# =============================================================================


@dataclass
class CreatePaymentResponse:
    success: bool
    redirect_url: str | None = None
    payment_id: str | None = None
    provider_reference: str | None = None
    error: str | None = None


@dataclass
class VerifyPaymentResponse:
    """
    Provider view of a payment.

    ``status`` is always a PaymentStatus value. ``metadata`` passes through
    provider-specific fields (network, subscription id, ...) untouched.
    """

    success: bool
    status: str = PaymentStatus.PENDING
    amount: Decimal | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class CancelPaymentResponse:
    success: bool
    error: str | None = None


@dataclass
class RefundPaymentResponse:
    success: bool
    refund_id: str | None = None
    error: str | None = None


@dataclass
class SubscriptionUpdate:
    """
    Subscription lifecycle change reported by a provider.

    kind is "renewal" (a new billing period was paid) or "cancellation".
    """

    RENEWAL = "renewal"
    CANCELLATION = "cancellation"

    subscription_id: str
    kind: str
    amount: Decimal | None = None
    currency: str | None = None
    period_end: datetime | None = None
    canceled_immediately: bool = False
    cancel_at_period_end: bool = False
    invoice_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for storing on a WebhookEvent row."""
        return {
            "subscription_id": self.subscription_id,
            "kind": self.kind,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "canceled_immediately": self.canceled_immediately,
            "cancel_at_period_end": self.cancel_at_period_end,
            "invoice_id": self.invoice_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubscriptionUpdate:
        amount = data.get("amount")
        period_end = data.get("period_end")
        return cls(
            subscription_id=data["subscription_id"],
            kind=data["kind"],
            amount=Decimal(amount) if amount is not None else None,
            currency=data.get("currency"),
            period_end=datetime.fromisoformat(period_end) if period_end else None,
            canceled_immediately=data.get("canceled_immediately", False),
            cancel_at_period_end=data.get("cancel_at_period_end", False),
            invoice_id=data.get("invoice_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class NormalizedWebhookEvent:
    """
    A verified webhook translated into provider-agnostic terms.

    Attributes:
        event_id: Provider-unique id used for deduplication
        type: Provider event name, kept for audit
        payment_id: Provider-side payment reference (session id, uuid, ...)
        status: PaymentStatus the event implies
        metadata: Provider metadata, usually carrying order_id
        raw_data: Original payload
        subscription: Set for renewal / cancellation events
    """

    event_id: str
    type: str
    payment_id: str
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)
    raw_data: dict[str, Any] = field(default_factory=dict)
    subscription: SubscriptionUpdate | None = None

    @property
    def order_id(self) -> str | None:
        return self.metadata.get("order_id") or None


# =============================================================================
# Provider Interface
# =============================================================================


class PaymentProvider(ABC):
    """
    Interface every payment backend implements.

    Subclasses set ``provider_id`` and ``display_name`` and implement the
    four abstract operations. cancel_payment / refund_payment are optional
    capabilities advertised by the supports_* flags; the defaults report
    them as unsupported.
    """

    provider_id: str = ""
    display_name: str = ""
    supports_cancellation: bool = False
    supports_refunds: bool = False

    def get_logger(self) -> logging.Logger:
        return logging.getLogger(f"{type(self).__module__}.{type(self).__name__}")

    @abstractmethod
    def create_one_time_payment(
        self,
        user: Any,
        metadata: PaymentMetadata,
        success_url: str,
        cancel_url: str,
    ) -> CreatePaymentResponse:
        """Start a single charge and return where to send the customer."""

    @abstractmethod
    def create_recurring_payment(
        self,
        user: Any,
        metadata: RecurringPaymentMetadata,
        success_url: str,
        cancel_url: str,
    ) -> CreatePaymentResponse:
        """Start a subscription and return where to send the customer."""

    @abstractmethod
    def verify_payment(self, payment_id: str) -> VerifyPaymentResponse:
        """Read the payment's current state. Must have no provider side effects."""

    @abstractmethod
    def handle_webhook(self, payload: bytes, signature: str | None) -> NormalizedWebhookEvent:
        """
        Verify and normalize a webhook delivery.

        Raises:
            SignatureError: If the signature is missing or does not match
        """

    def cancel_payment(self, payment_id: str) -> CancelPaymentResponse:
        return CancelPaymentResponse(
            success=False,
            error=f"{self.display_name or self.provider_id} does not support cancellation",
        )

    def refund_payment(self, payment_id: str, amount: Decimal | None = None) -> RefundPaymentResponse:
        return RefundPaymentResponse(
            success=False,
            error=f"{self.display_name or self.provider_id} does not support refunds",
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} provider_id={self.provider_id!r}>"


__all__ = [
    "CURRENCY_PATTERN",
    "CancelPaymentResponse",
    "CreatePaymentResponse",
    "NormalizedWebhookEvent",
    "PaymentMetadata",
    "PaymentProvider",
    "RecurringPaymentMetadata",
    "RefundPaymentResponse",
    "SubscriptionUpdate",
    "VerifyPaymentResponse",
    "from_minor_units",
    "to_minor_units",
]
