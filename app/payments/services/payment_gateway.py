"""
Persistence gateway for payment records.

PaymentGateway is the only code that writes PaymentIntent,
TransactionRecord, ProxyPlanSubscription rows and the user's wallet
balance. The orchestrator calls it; adapters never do.

Status changes go through ``_transition``, which locks the row, treats a
repeat of the current status as a no-op and refuses anything that would
regress a terminal status. This guarded check-then-act is what makes the
completion path safe against concurrent webhook retries and verification
calls for the same order.

Usage:
    from payments.services import PaymentGateway

    order_id = PaymentGateway.generate_order_id()
    payment = PaymentGateway.create_payment(
        order_id=order_id,
        user=user,
        provider="stripe",
        amount=Decimal("50.00"),
        currency="USD",
        payment_type=PaymentPurpose.WALLET_DEPOSIT,
    )

    payment, changed = PaymentGateway.mark_payment_completed(order_id)
"""

from __future__ import annotations

import string
import time
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from django.contrib.auth import get_user_model
from django.db.models import F, Q
from django.utils import timezone
from django.utils.crypto import get_random_string

from django_fsm import can_proceed

from core.services import BaseService

from payments.exceptions import PaymentNotFoundError, ReconciliationConflict
from payments.models import PaymentIntent, ProxyPlanSubscription, TransactionRecord
from payments.plans import ProxyPlan, compute_expiry
from payments.state_machines import PaymentStatus

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from authentication.models import User


ORDER_ID_SUFFIX_CHARS = string.ascii_lowercase + string.digits

# target status -> FSM transition method on PaymentIntent
TRANSITIONS = {
    PaymentStatus.COMPLETED: "complete",
    PaymentStatus.FAILED: "fail",
    PaymentStatus.CANCELED: "cancel",
    PaymentStatus.REFUNDED: "refund",
}

UPDATABLE_FIELDS = frozenset({"checkout_url", "provider_payment_id", "provider_reference", "metadata"})


class PaymentGateway(BaseService):
    """Storage operations for payments, ledger entries, plans and wallets."""

    # =========================================================================
    # Payment Records
    # =========================================================================

    @classmethod
    def generate_order_id(cls) -> str:
        """Return ``order_{epoch_ms}_{8 random chars}``."""
        return f"order_{int(time.time() * 1000)}_{get_random_string(8, ORDER_ID_SUFFIX_CHARS)}"

    @classmethod
    def create_payment(
        cls,
        order_id: str,
        user: User,
        provider: str,
        amount: Decimal,
        payment_type: str,
        currency: str = "USD",
        metadata: dict[str, Any] | None = None,
        is_recurring: bool = False,
    ) -> PaymentIntent:
        payment = PaymentIntent.objects.create(
            order_id=order_id,
            user=user,
            provider=provider,
            amount=amount,
            currency=currency.upper(),
            payment_type=payment_type,
            metadata=metadata or {},
            is_recurring=is_recurring,
        )
        cls.get_logger().info(
            "Payment record created",
            extra={
                "order_id": order_id,
                "user_id": user.pk,
                "provider": provider,
                "amount": str(amount),
                "payment_type": payment_type,
            },
        )
        return payment

    @classmethod
    def update_payment(cls, order_id: str, user: User | None = None, **patch: Any) -> PaymentIntent:
        """
        Update provider references on a payment.

        ``metadata`` is merged into the stored metadata rather than replacing it.

        Raises:
            ValueError: If patch names a field that may not be updated here
            PaymentNotFoundError: If the order does not exist
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with cls.atomic():
            payment = cls.get_payment_by_order_id(order_id, user=user, for_update=True)
            for name, value in patch.items():
                if name == "metadata":
                    value = {**payment.metadata, **(value or {})}
                setattr(payment, name, value)
            payment.save(update_fields=[*patch, "version", "updated_at"])
        return payment

    @classmethod
    def get_payment_by_order_id(
        cls,
        order_id: str,
        user: User | None = None,
        for_update: bool = False,
    ) -> PaymentIntent:
        """
        Load a payment, optionally scoped to its owner and row-locked.

        Raises:
            PaymentNotFoundError: No such order (or not owned by ``user``)
        """
        queryset = PaymentIntent.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        if user is not None:
            queryset = queryset.filter(user=user)
        try:
            return queryset.get(order_id=order_id)
        except PaymentIntent.DoesNotExist:
            raise PaymentNotFoundError(
                "Payment not found",
                details={"order_id": order_id},
            ) from None

    @classmethod
    def get_payment_by_provider_reference(cls, provider: str, payment_id: str) -> PaymentIntent | None:
        """Resolve a provider-side id (session, invoice uuid, payment intent) to a payment."""
        if not payment_id:
            return None
        return (
            PaymentIntent.objects.filter(provider=provider)
            .filter(
                Q(provider_payment_id=payment_id)
                | Q(provider_reference=payment_id)
                | Q(metadata__payment_intent_id=payment_id)
            )
            .first()
        )

    @classmethod
    def get_user_payments(
        cls,
        user: User,
        limit: int | None = 50,
        status: str | None = None,
        payment_type: str | None = None,
    ) -> QuerySet[PaymentIntent]:
        queryset = PaymentIntent.objects.filter(user=user)
        if status:
            queryset = queryset.filter(status=status)
        if payment_type:
            queryset = queryset.filter(payment_type=payment_type)
        queryset = queryset.order_by("-created_at")
        return queryset[:limit] if limit else queryset

    @classmethod
    def get_stale_pending_payments(cls, older_than: datetime) -> QuerySet[PaymentIntent]:
        return PaymentIntent.objects.filter(
            status=PaymentStatus.PENDING,
            created_at__lt=older_than,
        ).exclude(provider_payment_id="")

    # =========================================================================
    # Status Transitions
    # =========================================================================

    @classmethod
    def mark_payment_completed(cls, order_id: str, user: User | None = None) -> tuple[PaymentIntent, bool]:
        return cls._transition(order_id, PaymentStatus.COMPLETED, user=user)

    @classmethod
    def mark_payment_failed(cls, order_id: str, reason: str, user: User | None = None) -> tuple[PaymentIntent, bool]:
        return cls._transition(order_id, PaymentStatus.FAILED, user=user, reason=reason)

    @classmethod
    def mark_payment_canceled(cls, order_id: str, user: User | None = None) -> tuple[PaymentIntent, bool]:
        return cls._transition(order_id, PaymentStatus.CANCELED, user=user)

    @classmethod
    def mark_payment_refunded(cls, order_id: str, user: User | None = None) -> tuple[PaymentIntent, bool]:
        return cls._transition(order_id, PaymentStatus.REFUNDED, user=user)

    @classmethod
    def _transition(
        cls,
        order_id: str,
        target: str,
        user: User | None = None,
        **kwargs: Any,
    ) -> tuple[PaymentIntent, bool]:
        """
        Move a payment to ``target`` under a row lock.

        Returns:
            (payment, changed). ``changed`` is False when the payment was
            already in ``target``.

        Raises:
            ReconciliationConflict: The FSM does not allow the move
            PaymentNotFoundError: Unknown order
        """
        with cls.atomic():
            payment = cls.get_payment_by_order_id(order_id, user=user, for_update=True)
            if payment.status == target:
                return payment, False

            transition = getattr(payment, TRANSITIONS[target])
            if not can_proceed(transition):
                raise ReconciliationConflict(
                    f"Cannot move payment from {payment.status} to {target}",
                    details={
                        "order_id": order_id,
                        "current_status": payment.status,
                        "requested_status": str(target),
                    },
                )

            transition(**kwargs)
            payment.save()

        cls.get_logger().info(
            "Payment status changed",
            extra={"order_id": order_id, "status": str(target)},
        )
        return payment, True

    # =========================================================================
    # Ledger & Wallet
    # =========================================================================

    @classmethod
    def create_transaction_record(
        cls,
        payment: PaymentIntent,
        transaction_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[TransactionRecord, bool]:
        """
        Create the ledger entry for ``payment``, or return the existing one.

        Returns:
            (record, created)
        """
        return TransactionRecord.objects.get_or_create(
            payment=payment,
            defaults={
                "user_id": payment.user_id,
                "transaction_type": transaction_type,
                "amount": payment.amount,
                "currency": payment.currency,
                "provider": payment.provider,
                "description": description,
                "metadata": metadata or {},
            },
        )

    @classmethod
    def update_user_wallet_balance(cls, user_id: Any, delta: Decimal, payment: PaymentIntent) -> Decimal:
        """
        Add ``delta`` to the user's wallet and snapshot the balances on ``payment``.

        Returns:
            The new balance
        """
        User = get_user_model()

        with cls.atomic():
            user = User.objects.select_for_update().get(pk=user_id)
            previous_balance = user.wallet_balance

            User.objects.filter(pk=user_id).update(wallet_balance=F("wallet_balance") + delta)
            user.refresh_from_db(fields=["wallet_balance"])

            payment.metadata = {
                **payment.metadata,
                "previous_balance": str(previous_balance),
                "new_balance": str(user.wallet_balance),
            }
            payment.save(update_fields=["metadata", "version", "updated_at"])

        cls.get_logger().info(
            "Wallet balance updated",
            extra={
                "user_id": user_id,
                "order_id": payment.order_id,
                "delta": str(delta),
                "new_balance": str(user.wallet_balance),
            },
        )
        return user.wallet_balance

    # =========================================================================
    # Proxy Plans
    # =========================================================================

    @classmethod
    def activate_proxy_plan(
        cls,
        user: User,
        plan: ProxyPlan,
        payment: PaymentIntent,
        stripe_subscription_id: str = "",
    ) -> ProxyPlanSubscription:
        """Create or replace the user's plan for ``plan.plan_type``."""
        now = timezone.now()
        subscription, created = ProxyPlanSubscription.objects.update_or_create(
            user=user,
            plan_type=plan.plan_type,
            defaults={
                "tier": plan.tier,
                "plan_name": plan.name,
                "bandwidth": plan.bandwidth,
                "is_recurring": plan.is_recurring,
                "is_active": True,
                "purchased_at": now,
                "expires_at": compute_expiry(plan, now),
                "last_payment": payment,
                "stripe_subscription_id": stripe_subscription_id,
                "canceled_at": None,
                "cancel_at_period_end": False,
                "scheduled_cancellation_at": None,
            },
        )
        cls.get_logger().info(
            "Proxy plan activated",
            extra={
                "user_id": user.pk,
                "order_id": payment.order_id,
                "plan_type": plan.plan_type,
                "tier": plan.tier,
                "plan_created": created,
            },
        )
        return subscription

    @classmethod
    def get_plan_subscription(cls, stripe_subscription_id: str) -> ProxyPlanSubscription | None:
        if not stripe_subscription_id:
            return None
        return (
            ProxyPlanSubscription.objects.select_related("user", "last_payment")
            .filter(stripe_subscription_id=stripe_subscription_id)
            .first()
        )

    @classmethod
    def get_renewal_payment(cls, invoice_id: str) -> PaymentIntent | None:
        """Payment already recorded for a renewal invoice, if any."""
        return PaymentIntent.objects.filter(metadata__invoice_id=invoice_id).first()

    @classmethod
    def lock_plan_subscription(cls, subscription: ProxyPlanSubscription) -> ProxyPlanSubscription:
        """Re-read ``subscription`` under a row lock. Call inside atomic()."""
        return ProxyPlanSubscription.objects.select_for_update().select_related("user").get(pk=subscription.pk)

    @classmethod
    def record_plan_renewal(
        cls,
        subscription: ProxyPlanSubscription,
        payment: PaymentIntent | None,
        period_end: datetime | None,
    ) -> ProxyPlanSubscription:
        """
        Move the plan's renewal window forward after a billing period.

        ``payment`` is None for periods that cost nothing; the previous
        payment stays linked.
        """
        subscription.is_active = True
        if payment is not None:
            subscription.last_payment = payment
        subscription.last_renewal_at = timezone.now()
        if period_end is not None:
            subscription.next_renewal_at = period_end
        subscription.save(update_fields=["is_active", "last_payment", "last_renewal_at", "next_renewal_at", "updated_at"])
        return subscription

    @classmethod
    def record_plan_cancellation(
        cls,
        subscription: ProxyPlanSubscription,
        immediate: bool,
        period_end: datetime | None = None,
    ) -> ProxyPlanSubscription:
        """
        Apply a provider-side subscription cancellation.

        Immediate cancellations deactivate the plan now. Otherwise the plan
        stays active until ``period_end`` and is flagged for cancellation.
        """
        if immediate:
            subscription.is_active = False
            subscription.canceled_at = timezone.now()
            subscription.cancel_at_period_end = False
        else:
            subscription.cancel_at_period_end = True
            subscription.scheduled_cancellation_at = period_end
        subscription.save(
            update_fields=[
                "is_active",
                "canceled_at",
                "cancel_at_period_end",
                "scheduled_cancellation_at",
                "updated_at",
            ]
        )
        cls.get_logger().info(
            "Proxy plan cancellation recorded",
            extra={
                "subscription_id": subscription.stripe_subscription_id,
                "immediate": immediate,
            },
        )
        return subscription

    @classmethod
    def get_user_plans(cls, user: User) -> QuerySet[ProxyPlanSubscription]:
        return ProxyPlanSubscription.objects.filter(user=user).order_by("plan_type")

    @classmethod
    def get_user_transactions(cls, user: User, limit: int = 50) -> QuerySet[TransactionRecord]:
        return (
            TransactionRecord.objects.filter(user=user)
            .select_related("payment")
            .order_by("-created_at")[:limit]
        )
