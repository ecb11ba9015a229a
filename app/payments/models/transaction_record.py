"""
TransactionRecord: immutable ledger entry for a completed payment.

Exactly one TransactionRecord exists per completed PaymentIntent. The
one-to-one column is the database-level guarantee behind idempotent
completion: a retried webhook that reaches the completion path again
finds the existing record instead of inserting a second one.

Refunds do not add a row. A refund moves the PaymentIntent to
`refunded` (partial refunds are listed in its metadata) and the original
entry stays as written, so the payment flow never writes
`TransactionType.REFUND`.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel, UUIDPrimaryKeyMixin

from payments.exceptions import ImmutableRecordError
from payments.state_machines import PaymentProviderId, TransactionType


class TransactionRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Ledger entry derived from a completed PaymentIntent.

    Fields:
        payment: The completed PaymentIntent (one-to-one)
        user: Account the money belongs to
        transaction_type: deposit, purchase or refund
        amount/currency: Major units, copied from the payment
        provider: Processor that collected the money
        description: Human-readable line for the billing history
        metadata: Plan details or wallet balance snapshot
    """

    payment = models.OneToOneField(
        "payments.PaymentIntent",
        on_delete=models.PROTECT,
        related_name="transaction",
        help_text="Completed payment this entry was derived from",
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="transactions",
    )

    transaction_type = models.CharField(
        max_length=20,
        choices=TransactionType.choices,
        db_index=True,
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)

    provider = models.CharField(
        max_length=20,
        choices=PaymentProviderId.choices,
    )

    description = models.CharField(max_length=255, blank=True, default="")

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Transaction Record"
        verbose_name_plural = "Transaction Records"
        indexes = [
            models.Index(fields=["user", "created_at"], name="txrec_user_created_idx"),
        ]

    def __str__(self) -> str:
        return f"TransactionRecord({self.transaction_type}, {self.amount} {self.currency})"

    @property
    def order_id(self) -> str:
        return self.payment.order_id

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("TransactionRecord is immutable once created")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("TransactionRecord cannot be deleted")
