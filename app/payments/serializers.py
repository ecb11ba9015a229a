"""
DRF serializers for payments app.

Serializers:
    ProxyPlanSerializer: Catalog entry (read-only, from payments.plans)
    PaymentIntentSerializer: Payment detail for the owning user
    TransactionRecordSerializer: Ledger entry
    ProxyPlanSubscriptionSerializer: User's plan holdings
    PurchaseRequestSerializer / DepositRequestSerializer: Initiation input
    PaymentInitiationSerializer: {order_id, redirect_url}
    WalletSerializer: Balance plus recent transactions

Usage:
    serializer = PurchaseRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
"""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from payments.models import PaymentIntent, ProxyPlanSubscription, TransactionRecord
from payments.plans import PLAN_TIERS, PROXY_PLANS
from payments.state_machines import PaymentProviderId, PaymentType

BILLING_CYCLE_CHOICES = ("monthly", "yearly")


class ProxyPlanSerializer(serializers.Serializer):
    plan_type = serializers.CharField(read_only=True)
    tier = serializers.CharField(read_only=True)
    name = serializers.CharField(read_only=True)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    bandwidth = serializers.CharField(read_only=True)
    is_recurring = serializers.BooleanField(read_only=True)


class PaymentIntentSerializer(serializers.ModelSerializer):
    """
    Payment as shown to its owner.

    ``billing`` is derived from is_recurring (one_time / recurring). Provider
    references stay server-side.
    """

    billing = serializers.SerializerMethodField()

    class Meta:
        model = PaymentIntent
        fields = [
            "order_id",
            "provider",
            "amount",
            "currency",
            "payment_type",
            "billing",
            "status",
            "checkout_url",
            "error",
            "created_at",
            "completed_at",
            "failed_at",
            "canceled_at",
            "refunded_at",
        ]
        read_only_fields = fields

    def get_billing(self, obj: PaymentIntent) -> str:
        return PaymentType.RECURRING if obj.is_recurring else PaymentType.ONE_TIME


class TransactionRecordSerializer(serializers.ModelSerializer):
    order_id = serializers.CharField(source="payment.order_id", read_only=True)

    class Meta:
        model = TransactionRecord
        fields = [
            "id",
            "order_id",
            "transaction_type",
            "amount",
            "currency",
            "provider",
            "description",
            "created_at",
        ]
        read_only_fields = fields


class ProxyPlanSubscriptionSerializer(serializers.ModelSerializer):
    is_expired = serializers.BooleanField(read_only=True)

    class Meta:
        model = ProxyPlanSubscription
        fields = [
            "id",
            "plan_type",
            "tier",
            "plan_name",
            "bandwidth",
            "is_recurring",
            "is_active",
            "is_expired",
            "purchased_at",
            "expires_at",
            "last_renewal_at",
            "next_renewal_at",
            "canceled_at",
            "cancel_at_period_end",
            "scheduled_cancellation_at",
        ]
        read_only_fields = fields


class PurchaseRequestSerializer(serializers.Serializer):
    """
    Input for a proxy plan purchase.

    Fields:
        plan_type/tier: Catalog keys
        provider: stripe or cryptomus
        billing_cycle: monthly (default) or yearly, recurring plans only
        recurring: Override the plan's default billing mode
    """

    plan_type = serializers.ChoiceField(choices=sorted(PROXY_PLANS))
    tier = serializers.ChoiceField(choices=PLAN_TIERS)
    provider = serializers.ChoiceField(choices=PaymentProviderId.choices)
    billing_cycle = serializers.ChoiceField(choices=BILLING_CYCLE_CHOICES, default="monthly")
    recurring = serializers.BooleanField(allow_null=True, default=None)


class DepositRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    provider = serializers.ChoiceField(choices=PaymentProviderId.choices)
    currency = serializers.RegexField(r"^[A-Za-z]{3}$", required=False)


class PaymentInitiationSerializer(serializers.Serializer):
    order_id = serializers.CharField(read_only=True)
    redirect_url = serializers.URLField(read_only=True)


class WalletSerializer(serializers.Serializer):
    balance = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    transactions = TransactionRecordSerializer(many=True, read_only=True)
