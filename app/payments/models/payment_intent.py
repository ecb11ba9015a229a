"""
PaymentIntent model: one row per attempted payment.

A PaymentIntent is created ``pending`` before the customer is redirected
to a provider and moves to a terminal state exactly once. Rows are never
deleted; together with TransactionRecord they form the payment audit
trail.

Usage:
    from payments.models import PaymentIntent

    payment = PaymentIntent.objects.create(
        order_id="order_1718000000000_ab12cd34",
        user=user,
        provider="stripe",
        amount=Decimal("50.00"),
        currency="USD",
        payment_type=PaymentPurpose.WALLET_DEPOSIT,
    )

    # State transitions using django-fsm
    payment.complete()  # pending -> completed
    payment.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel, UUIDPrimaryKeyMixin

from payments.state_machines import (
    TERMINAL_PAYMENT_STATUSES,
    PaymentProviderId,
    PaymentPurpose,
    PaymentStatus,
)


class PaymentIntent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A single payment attempt at one provider.

    Uses django-fsm for the status machine and a version counter bumped on
    every update.

    State Flow:
        PENDING -> COMPLETED -> REFUNDED
        PENDING -> FAILED
        PENDING -> CANCELED

    Fields:
        order_id: Internal idempotency key, echoed in provider metadata
        user: Owning account
        provider: Payment processor id
        amount/currency: Major units (27.50 USD)
        payment_type: wallet_deposit or proxy_purchase
        status: FSM-managed status
        checkout_url: Provider redirect URL, set once at creation
        provider_payment_id: Session id / invoice uuid used for verification
        provider_reference: Secondary provider reference
        is_recurring: Whether a subscription was requested
        error: Reason recorded when the payment failed
        metadata: Plan details, provider ids, wallet balance snapshot
    """

    # ==========================================================================
    # Identity
    # ==========================================================================

    order_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Internal order id used as idempotency key",
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payment_intents",
        help_text="User who owns this payment",
    )

    provider = models.CharField(
        max_length=20,
        choices=PaymentProviderId.choices,
        help_text="Payment processor handling this payment",
    )

    # ==========================================================================
    # Amount & Purpose
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Amount in major currency units",
    )

    currency = models.CharField(
        max_length=3,
        default="USD",
        help_text="ISO 4217 currency code",
    )

    payment_type = models.CharField(
        max_length=20,
        choices=PaymentPurpose.choices,
        help_text="What this payment is for",
    )

    is_recurring = models.BooleanField(
        default=False,
        help_text="Whether a recurring subscription was requested",
    )

    # ==========================================================================
    # Status
    # ==========================================================================

    status = FSMField(
        default=PaymentStatus.PENDING,
        choices=PaymentStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current payment status (managed by FSM)",
    )

    # ==========================================================================
    # Provider References
    # ==========================================================================

    checkout_url = models.URLField(
        max_length=2048,
        blank=True,
        default="",
        help_text="Hosted checkout URL returned by the provider",
    )

    provider_payment_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Provider payment id (Stripe session id, Cryptomus uuid)",
    )

    provider_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Secondary provider reference",
    )

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Incremented on each save",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Metadata & Error Info
    # ==========================================================================

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Plan details and provider ids",
    )

    error = models.TextField(
        blank=True,
        default="",
        help_text="Reason the payment failed",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Intent"
        verbose_name_plural = "Payment Intents"
        indexes = [
            models.Index(fields=["user", "status"], name="payint_user_status_idx"),
            models.Index(fields=["user", "created_at"], name="payint_user_created_idx"),
            models.Index(fields=["provider", "provider_payment_id"], name="payint_provider_ref_idx"),
            models.Index(fields=["status", "created_at"], name="payint_status_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="payment_intent_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentIntent({self.order_id}, {self.status}, {self.amount} {self.currency})"

    def save(self, *args, **kwargs):
        """Save, atomically incrementing ``version`` on updates."""
        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def plan_type(self) -> str | None:
        return self.metadata.get("plan_type")

    @property
    def plan_tier(self) -> str | None:
        return self.metadata.get("plan_tier")

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=PaymentStatus.PENDING, target=PaymentStatus.COMPLETED)
    def complete(self):
        """Provider confirmed the payment. Transition: PENDING -> COMPLETED"""
        self.completed_at = timezone.now()

    @transition(field=status, source=PaymentStatus.PENDING, target=PaymentStatus.FAILED)
    def fail(self, reason: str):
        """
        Record a failed payment.

        Transition: PENDING -> FAILED

        Args:
            reason: Human-readable cause, stored on ``error``
        """
        self.failed_at = timezone.now()
        self.error = reason or "Payment failed"

    @transition(field=status, source=PaymentStatus.PENDING, target=PaymentStatus.CANCELED)
    def cancel(self):
        """Customer or provider abandoned the payment. Transition: PENDING -> CANCELED"""
        self.canceled_at = timezone.now()

    @transition(field=status, source=PaymentStatus.COMPLETED, target=PaymentStatus.REFUNDED)
    def refund(self):
        """
        Mark a completed payment as refunded.

        Transition: COMPLETED -> REFUNDED

        The original TransactionRecord stays; refunds are visible through
        the payment status and ``refunded_at``.
        """
        self.refunded_at = timezone.now()
