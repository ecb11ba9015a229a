"""
Tests for PaymentOrchestrator.

Tests cover:
- Wallet deposit and proxy purchase initiation
- Input validation before any provider call
- Provider failures and unexpected adapter exceptions
- Verification, idempotent completion and reconciliation conflicts
- Cancellation and refunds
- Subscription renewal and cancellation
- Stale payment sweep
"""

from datetime import timedelta
from decimal import Decimal
from urllib.parse import parse_qs, urlsplit

import pytest
from django.utils import timezone

from payments.adapters import (
    CancelPaymentResponse,
    CreatePaymentResponse,
    RecurringPaymentMetadata,
    RefundPaymentResponse,
    SubscriptionUpdate,
    VerifyPaymentResponse,
)
from payments.models import PaymentIntent, ProxyPlanSubscription, TransactionRecord
from payments.services import PaymentGateway
from payments.state_machines import BillingInterval, PaymentPurpose, PaymentStatus, TransactionType
from payments.tests.factories import PaymentIntentFactory, ProxyPurchaseFactory

BASE_URL = "https://app.example.com"


def reload(payment: PaymentIntent) -> PaymentIntent:
    return PaymentIntent.objects.get(pk=payment.pk)


def completed(amount: str = "50.00", **metadata) -> VerifyPaymentResponse:
    return VerifyPaymentResponse(
        success=True,
        status=PaymentStatus.COMPLETED,
        amount=Decimal(amount),
        currency="USD",
        metadata=metadata,
    )


# =============================================================================
# Wallet Deposits
# =============================================================================


@pytest.mark.django_db
class TestWalletDeposit:
    def test_creates_pending_payment_with_checkout_url(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe")

        assert result.success is True
        assert result.data.redirect_url == "https://pay.example.com/stripe/session"

        payment = PaymentIntent.objects.get(order_id=result.data.order_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.payment_type == PaymentPurpose.WALLET_DEPOSIT
        assert payment.amount == Decimal("50.00")
        assert payment.checkout_url == "https://pay.example.com/stripe/session"
        assert payment.provider_payment_id == "stripe_pay_1"
        assert payment.provider_reference == "stripe_ref_1"
        assert stripe_provider.call_names() == ["create_one_time_payment"]

    def test_sends_order_context_to_provider(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_wallet_deposit(user, "50", provider="stripe")

        _, metadata, success_url, cancel_url = stripe_provider.calls[0]
        assert metadata.order_id == result.data.order_id
        assert metadata.user_id == str(user.pk)
        assert metadata.amount == Decimal("50.00")
        assert metadata.customer_email == user.email
        assert metadata.description == "Wallet Deposit - USD 50.00"
        assert metadata.callback_url == f"{BASE_URL}/api/v1/payments/webhooks/cryptomus/"

        assert success_url.startswith(f"{BASE_URL}/dashboard/billing/success?")
        assert cancel_url.startswith(f"{BASE_URL}/dashboard/billing/cancel?")
        query = parse_qs(urlsplit(success_url).query)
        assert query["orderId"] == [result.data.order_id]
        assert query["provider"] == ["stripe"]
        assert query["amount"] == ["50.00"]
        assert query["type"] == ["wallet_deposit"]

    def test_completion_credits_wallet_once(self, orchestrator, stripe_provider, user):
        order_id = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe").data.order_id
        stripe_provider.verify_response = completed(payment_intent_id="pi_test_1")

        first = orchestrator.verify_payment_status(order_id, user=user)
        second = orchestrator.verify_payment_status(order_id, user=user)

        assert first.success is True
        assert first.data.status == PaymentStatus.COMPLETED
        assert second.success is True
        user.refresh_from_db()
        assert user.wallet_balance == Decimal("50.00")
        assert TransactionRecord.objects.filter(payment__order_id=order_id).count() == 1
        assert stripe_provider.call_names().count("verify_payment") == 1

        payment = PaymentIntent.objects.get(order_id=order_id)
        assert payment.metadata["payment_intent_id"] == "pi_test_1"
        assert payment.metadata["new_balance"] == "50.00"

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "10.001", "NaN"])
    def test_invalid_amount_rejected_without_provider_call(self, orchestrator, stripe_provider, user, amount):
        result = orchestrator.initiate_wallet_deposit(user, amount, provider="stripe")

        assert result.success is False
        assert result.error_code == "INVALID_AMOUNT"
        assert stripe_provider.calls == []
        assert not PaymentIntent.objects.exists()

    @pytest.mark.parametrize("currency", ["U$D", "US", "EURO", "US\n"])
    def test_invalid_currency_rejected_before_any_record(self, orchestrator, stripe_provider, user, currency):
        result = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe", currency=currency)

        assert result.success is False
        assert result.error_code == "INVALID_CURRENCY"
        assert stripe_provider.calls == []
        assert not PaymentIntent.objects.exists()

    def test_currency_is_upper_cased(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe", currency="eur")

        assert PaymentIntent.objects.get(order_id=result.data.order_id).currency == "EUR"
        assert stripe_provider.calls[0][1].currency == "EUR"

    def test_unknown_provider_rejected(self, orchestrator, user):
        result = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="paypal")

        assert result.success is False
        assert result.error_code == "PROVIDER_UNAVAILABLE"
        assert not PaymentIntent.objects.exists()

    def test_provider_rejection_marks_payment_failed(self, orchestrator, stripe_provider, user):
        stripe_provider.create_response = CreatePaymentResponse(success=False, error="Your card was declined.")

        result = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe")

        assert result.success is False
        assert result.error == "Your card was declined."
        assert result.error_code == "PROVIDER_ERROR"
        payment = PaymentIntent.objects.get(user=user)
        assert payment.status == PaymentStatus.FAILED
        assert payment.error == "Your card was declined."

    def test_missing_checkout_url_marks_payment_failed(self, orchestrator, stripe_provider, user):
        stripe_provider.create_response = CreatePaymentResponse(success=True, payment_id="cs_1")

        result = orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe")

        assert result.success is False
        assert PaymentIntent.objects.get(user=user).status == PaymentStatus.FAILED

    def test_unexpected_provider_exception_is_reraised(self, orchestrator, stripe_provider, user):
        stripe_provider.create_error = RuntimeError("socket closed")

        with pytest.raises(RuntimeError):
            orchestrator.initiate_wallet_deposit(user, Decimal("50.00"), provider="stripe")

        payment = PaymentIntent.objects.get(user=user)
        assert payment.status == PaymentStatus.FAILED
        assert payment.error == "Unexpected provider error: socket closed"


# =============================================================================
# Proxy Purchases
# =============================================================================


@pytest.mark.django_db
class TestProxyPurchase:
    def test_recurring_plan_starts_monthly_subscription(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_proxy_purchase(user, "residential", "basic", provider="stripe")

        assert result.success is True
        name, metadata, success_url, _ = stripe_provider.calls[0]
        assert name == "create_recurring_payment"
        assert isinstance(metadata, RecurringPaymentMetadata)
        assert metadata.amount == Decimal("27.50")
        assert metadata.interval == BillingInterval.MONTH
        assert metadata.interval_count == 1
        assert metadata.extra == {"plan_type": "residential", "plan_tier": "basic"}

        query = parse_qs(urlsplit(success_url).query)
        assert query["planType"] == ["residential"]
        assert query["planTier"] == ["basic"]

        payment = PaymentIntent.objects.get(order_id=result.data.order_id)
        assert payment.payment_type == PaymentPurpose.PROXY_PURCHASE
        assert payment.is_recurring is True
        assert payment.metadata["plan_name"] == "Residential Basic"
        assert payment.metadata["billing_cycle"] == "monthly"

    def test_yearly_cycle_bills_twelve_months(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_proxy_purchase(
            user, "residential", "basic", provider="stripe", billing_cycle="yearly"
        )

        metadata = stripe_provider.calls[0][1]
        assert metadata.interval == BillingInterval.YEAR
        assert metadata.amount == Decimal("330.00")
        assert PaymentIntent.objects.get(order_id=result.data.order_id).amount == Decimal("330.00")

    def test_recurring_plan_bought_once(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_proxy_purchase(
            user, "residential", "basic", provider="stripe", recurring=False, billing_cycle="yearly"
        )

        assert stripe_provider.call_names() == ["create_one_time_payment"]
        payment = PaymentIntent.objects.get(order_id=result.data.order_id)
        assert payment.amount == Decimal("27.50")
        assert payment.is_recurring is False
        assert payment.metadata["billing_cycle"] is None

    def test_one_time_plan(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_proxy_purchase(user, "datacenter", "pro", provider="stripe")

        assert result.success is True
        assert stripe_provider.call_names() == ["create_one_time_payment"]
        assert stripe_provider.calls[0][1].amount == Decimal("50.00")

    def test_one_time_plan_cannot_recur(self, orchestrator, stripe_provider, user):
        result = orchestrator.initiate_proxy_purchase(
            user, "datacenter", "basic", provider="stripe", recurring=True
        )

        assert result.success is False
        assert result.error_code == "RECURRING_NOT_SUPPORTED"
        assert stripe_provider.calls == []

    def test_cryptomus_receives_recurring_request(self, orchestrator, cryptomus_provider, user):
        result = orchestrator.initiate_proxy_purchase(user, "mobile", "pro", provider="cryptomus")

        assert result.success is True
        assert cryptomus_provider.call_names() == ["create_recurring_payment"]

    @pytest.mark.parametrize(
        "plan_type,tier,billing_cycle,error_code",
        [
            ("residential", "platinum", "monthly", "INVALID_PLAN"),
            ("satellite", "basic", "monthly", "INVALID_PLAN"),
            ("residential", "basic", "weekly", "INVALID_BILLING_CYCLE"),
        ],
    )
    def test_invalid_selection(self, orchestrator, user, plan_type, tier, billing_cycle, error_code):
        result = orchestrator.initiate_proxy_purchase(
            user, plan_type, tier, provider="stripe", billing_cycle=billing_cycle
        )

        assert result.success is False
        assert result.error_code == error_code
        assert not PaymentIntent.objects.exists()

    def test_completion_activates_plan(self, orchestrator, user, pending_purchase):
        result = orchestrator.complete_payment(
            pending_purchase.order_id, "webhook", {"subscription_id": "sub_test_new"}
        )

        assert result.success is True
        plan = ProxyPlanSubscription.objects.get(user=user, plan_type="residential")
        assert plan.is_active is True
        assert plan.tier == "basic"
        assert plan.stripe_subscription_id == "sub_test_new"
        assert plan.last_payment == pending_purchase

        record = TransactionRecord.objects.get(payment=pending_purchase)
        assert record.transaction_type == TransactionType.PURCHASE
        assert record.metadata["plan_name"] == "Residential Basic"
        user.refresh_from_db()
        assert user.wallet_balance == Decimal("0.00")


# =============================================================================
# Verification
# =============================================================================


@pytest.mark.django_db
class TestVerifyPaymentStatus:
    def test_terminal_payment_skips_provider(self, orchestrator, stripe_provider, completed_deposit):
        result = orchestrator.verify_payment_status(completed_deposit.order_id)

        assert result.success is True
        assert result.data.status == PaymentStatus.COMPLETED
        assert stripe_provider.calls == []

    def test_pending_stays_pending(self, orchestrator, stripe_provider, pending_deposit):
        result = orchestrator.verify_payment_status(pending_deposit.order_id)

        assert result.data.status == PaymentStatus.PENDING
        assert stripe_provider.calls == [("verify_payment", pending_deposit.provider_payment_id)]

    def test_failed_at_provider(self, orchestrator, stripe_provider, pending_deposit):
        stripe_provider.verify_response = VerifyPaymentResponse(success=True, status=PaymentStatus.FAILED)

        result = orchestrator.verify_payment_status(pending_deposit.order_id)

        assert result.data.status == PaymentStatus.FAILED
        assert reload(pending_deposit).error == "Payment failed at provider"

    def test_canceled_at_provider(self, orchestrator, stripe_provider, pending_deposit):
        stripe_provider.verify_response = VerifyPaymentResponse(success=True, status=PaymentStatus.CANCELED)

        result = orchestrator.verify_payment_status(pending_deposit.order_id)

        assert result.data.status == PaymentStatus.CANCELED

    def test_provider_error_leaves_payment_pending(self, orchestrator, stripe_provider, pending_deposit):
        stripe_provider.verify_response = VerifyPaymentResponse(
            success=False, status=PaymentStatus.FAILED, error="Could not connect to Stripe. Please retry."
        )

        result = orchestrator.verify_payment_status(pending_deposit.order_id)

        assert result.success is False
        assert result.error_code == "PROVIDER_ERROR"
        assert reload(pending_deposit).status == PaymentStatus.PENDING

    def test_missing_provider_reference(self, orchestrator, user):
        payment = PaymentIntentFactory(user=user, provider_payment_id="")

        result = orchestrator.verify_payment_status(payment.order_id)

        assert result.success is False
        assert result.error_code == "MISSING_PROVIDER_REFERENCE"

    def test_other_users_payment_not_found(self, orchestrator, pending_deposit, other_user):
        result = orchestrator.verify_payment_status(pending_deposit.order_id, user=other_user)

        assert result.success is False
        assert result.error_code == "PAYMENT_NOT_FOUND"


@pytest.mark.django_db
class TestCompletion:
    def test_repeated_completion_is_idempotent(self, orchestrator, user, pending_deposit):
        for _ in range(3):
            assert orchestrator.complete_payment(pending_deposit.order_id, "webhook").success

        user.refresh_from_db()
        assert user.wallet_balance == Decimal("50.00")
        assert TransactionRecord.objects.filter(user=user).count() == 1

    def test_completion_after_refund_is_a_conflict(self, orchestrator, user):
        payment = PaymentIntentFactory(user=user, status=PaymentStatus.REFUNDED)

        result = orchestrator.complete_payment(payment.order_id, "webhook")

        assert result.success is False
        assert result.error_code == "RECONCILIATION_CONFLICT"
        assert reload(payment).status == PaymentStatus.REFUNDED
        assert not TransactionRecord.objects.exists()
        user.refresh_from_db()
        assert user.wallet_balance == Decimal("0.00")

    def test_unknown_order(self, orchestrator, db):
        result = orchestrator.complete_payment("order_missing", "webhook")

        assert result.success is False
        assert result.error_code == "PAYMENT_NOT_FOUND"

    def test_late_failure_does_not_regress_completed(self, orchestrator, completed_deposit):
        result = orchestrator.fail_payment(completed_deposit.order_id, "late failure")

        assert result.success is False
        assert result.error_code == "RECONCILIATION_CONFLICT"
        assert reload(completed_deposit).status == PaymentStatus.COMPLETED


# =============================================================================
# Cancellation & Refunds
# =============================================================================


@pytest.mark.django_db
class TestCancelPayment:
    def test_cancels_at_provider_then_locally(self, orchestrator, stripe_provider, pending_deposit, user):
        result = orchestrator.cancel_payment(pending_deposit.order_id, user=user)

        assert result.success is True
        assert result.data.status == PaymentStatus.CANCELED
        assert stripe_provider.calls == [("cancel_payment", pending_deposit.provider_payment_id)]

    def test_provider_refusal_keeps_payment_pending(self, orchestrator, stripe_provider, pending_deposit):
        stripe_provider.cancel_response = CancelPaymentResponse(success=False, error="Session already completed")

        result = orchestrator.cancel_payment(pending_deposit.order_id)

        assert result.success is False
        assert result.error == "Session already completed"
        assert reload(pending_deposit).status == PaymentStatus.PENDING

    def test_provider_without_cancellation_cancels_locally(self, orchestrator, cryptomus_provider, user):
        payment = PaymentIntentFactory(user=user, provider="cryptomus")

        result = orchestrator.cancel_payment(payment.order_id)

        assert result.data.status == PaymentStatus.CANCELED
        assert cryptomus_provider.calls == []

    def test_completed_payment_not_cancelable(self, orchestrator, completed_deposit):
        result = orchestrator.cancel_payment(completed_deposit.order_id)

        assert result.success is False
        assert result.error_code == "PAYMENT_NOT_CANCELABLE"


@pytest.mark.django_db
class TestRefundPayment:
    def test_full_refund(self, orchestrator, stripe_provider, completed_deposit):
        result = orchestrator.refund_payment(completed_deposit.order_id)

        assert result.success is True
        assert result.data.status == PaymentStatus.REFUNDED
        assert stripe_provider.calls == [("refund_payment", completed_deposit.provider_payment_id, None)]
        assert TransactionRecord.objects.filter(payment=completed_deposit).count() == 0

    def test_refund_leaves_original_ledger_entry(self, orchestrator, stripe_provider, pending_deposit):
        orchestrator.complete_payment(pending_deposit.order_id, "webhook")

        result = orchestrator.refund_payment(pending_deposit.order_id)

        assert result.data.status == PaymentStatus.REFUNDED
        record = TransactionRecord.objects.get(payment=pending_deposit)
        assert record.transaction_type == TransactionType.DEPOSIT
        assert not TransactionRecord.objects.filter(transaction_type=TransactionType.REFUND).exists()

    def test_partial_refund_keeps_payment_completed(self, orchestrator, stripe_provider, completed_deposit):
        result = orchestrator.refund_payment(completed_deposit.order_id, Decimal("20.00"))

        assert result.success is True
        payment = reload(completed_deposit)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.metadata["partial_refunds"] == [{"refund_id": "re_test_1", "amount": "20.00"}]

    def test_refund_above_amount_rejected(self, orchestrator, stripe_provider, completed_deposit):
        result = orchestrator.refund_payment(completed_deposit.order_id, Decimal("75.00"))

        assert result.error_code == "INVALID_AMOUNT"
        assert stripe_provider.calls == []

    def test_pending_payment_not_refundable(self, orchestrator, pending_deposit):
        result = orchestrator.refund_payment(pending_deposit.order_id)

        assert result.error_code == "PAYMENT_NOT_REFUNDABLE"

    def test_provider_without_refunds(self, orchestrator, user):
        payment = PaymentIntentFactory(user=user, provider="cryptomus", status=PaymentStatus.COMPLETED)

        result = orchestrator.refund_payment(payment.order_id)

        assert result.error_code == "REFUND_NOT_SUPPORTED"

    def test_provider_refund_failure(self, orchestrator, stripe_provider, completed_deposit):
        stripe_provider.refund_response = RefundPaymentResponse(success=False, error="Charge already refunded")

        result = orchestrator.refund_payment(completed_deposit.order_id)

        assert result.success is False
        assert result.error == "Charge already refunded"
        assert reload(completed_deposit).status == PaymentStatus.COMPLETED


# =============================================================================
# Subscription Lifecycle
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionRenewal:
    def renewal(self, invoice_id="in_test_1", period_end=None):
        return SubscriptionUpdate(
            subscription_id="sub_test_renewing",
            kind=SubscriptionUpdate.RENEWAL,
            amount=Decimal("27.50"),
            currency="USD",
            period_end=period_end or timezone.now() + timedelta(days=30),
            invoice_id=invoice_id,
        )

    def test_renewal_records_new_completed_payment(self, orchestrator, user, plan_subscription):
        update = self.renewal()

        result = orchestrator.process_subscription_renewal(update, "stripe")

        assert result.success is True
        payment = result.data
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.user == user
        assert payment.amount == Decimal("27.50")
        assert payment.metadata["renewal"] is True
        assert payment.metadata["invoice_id"] == "in_test_1"
        assert TransactionRecord.objects.get(payment=payment).transaction_type == TransactionType.PURCHASE

        plan_subscription.refresh_from_db()
        assert plan_subscription.last_payment == payment
        assert plan_subscription.last_renewal_at is not None
        assert plan_subscription.next_renewal_at == update.period_end

    def test_repeated_invoice_returns_existing_payment(self, orchestrator, plan_subscription):
        first = orchestrator.process_subscription_renewal(self.renewal(), "stripe")
        second = orchestrator.process_subscription_renewal(self.renewal(), "stripe")

        assert second.data.pk == first.data.pk
        assert PaymentIntent.objects.filter(metadata__invoice_id="in_test_1").count() == 1

    def test_each_period_gets_its_own_payment(self, orchestrator, plan_subscription):
        orchestrator.process_subscription_renewal(self.renewal("in_test_1"), "stripe")
        orchestrator.process_subscription_renewal(self.renewal("in_test_2"), "stripe")

        assert TransactionRecord.objects.filter(user=plan_subscription.user).count() == 2

    def test_invoice_recorded_while_waiting_for_lock(self, mocker, orchestrator, user, plan_subscription):
        concurrent = ProxyPurchaseFactory(
            user=user,
            status=PaymentStatus.COMPLETED,
            metadata={"renewal": True, "invoice_id": "in_test_1"},
        )
        lock = mocker.patch.object(
            PaymentGateway,
            "lock_plan_subscription",
            side_effect=lambda subscription: ProxyPlanSubscription.objects.get(pk=subscription.pk),
        )

        result = orchestrator.process_subscription_renewal(self.renewal(), "stripe")

        lock.assert_called_once()
        assert result.data.pk == concurrent.pk
        assert PaymentIntent.objects.filter(metadata__invoice_id="in_test_1").count() == 1
        assert not TransactionRecord.objects.exists()

    def test_dedupe_runs_under_plan_lock(self, mocker, orchestrator, plan_subscription):
        calls = []
        real_lock = PaymentGateway.lock_plan_subscription
        real_lookup = PaymentGateway.get_renewal_payment
        mocker.patch.object(
            PaymentGateway,
            "lock_plan_subscription",
            side_effect=lambda subscription: calls.append("lock") or real_lock(subscription),
        )
        mocker.patch.object(
            PaymentGateway,
            "get_renewal_payment",
            side_effect=lambda invoice_id: calls.append("lookup") or real_lookup(invoice_id),
        )

        orchestrator.process_subscription_renewal(self.renewal(), "stripe")

        assert calls == ["lock", "lookup"]

    def test_zero_amount_invoice_extends_plan_without_payment(self, orchestrator, plan_subscription):
        update = self.renewal()
        update.amount = Decimal("0.00")

        result = orchestrator.process_subscription_renewal(update, "stripe")

        assert result.success is True
        assert result.data is None
        assert not PaymentIntent.objects.exists()
        assert not TransactionRecord.objects.exists()
        plan_subscription.refresh_from_db()
        assert plan_subscription.is_active is True
        assert plan_subscription.last_payment is None
        assert plan_subscription.next_renewal_at == update.period_end

    def test_missing_amount_falls_back_to_plan_price(self, orchestrator, plan_subscription):
        update = self.renewal()
        update.amount = None

        result = orchestrator.process_subscription_renewal(update, "stripe")

        assert result.data.amount == Decimal("27.50")

    def test_unknown_subscription(self, orchestrator, db):
        update = SubscriptionUpdate(subscription_id="sub_unknown", kind=SubscriptionUpdate.RENEWAL)

        result = orchestrator.process_subscription_renewal(update, "stripe")

        assert result.error_code == "SUBSCRIPTION_NOT_FOUND"


@pytest.mark.django_db
class TestSubscriptionCancellation:
    def test_immediate(self, orchestrator, plan_subscription):
        update = SubscriptionUpdate(
            subscription_id="sub_test_renewing",
            kind=SubscriptionUpdate.CANCELLATION,
            canceled_immediately=True,
        )

        result = orchestrator.process_subscription_cancellation(update, "stripe")

        assert result.success is True
        plan_subscription.refresh_from_db()
        assert plan_subscription.is_active is False
        assert plan_subscription.canceled_at is not None

    def test_at_period_end(self, orchestrator, plan_subscription):
        period_end = timezone.now() + timedelta(days=9)
        update = SubscriptionUpdate(
            subscription_id="sub_test_renewing",
            kind=SubscriptionUpdate.CANCELLATION,
            cancel_at_period_end=True,
            period_end=period_end,
        )

        orchestrator.process_subscription_cancellation(update, "stripe")

        plan_subscription.refresh_from_db()
        assert plan_subscription.is_active is True
        assert plan_subscription.cancel_at_period_end is True
        assert plan_subscription.scheduled_cancellation_at == period_end


# =============================================================================
# Stale Payment Sweep
# =============================================================================


@pytest.mark.django_db
class TestReconcileStalePayments:
    def test_verifies_only_old_pending_payments(self, orchestrator, stripe_provider, cryptomus_provider, user):
        stripe_old = PaymentIntentFactory(user=user)
        cryptomus_old = PaymentIntentFactory(user=user, provider="cryptomus")
        recent = PaymentIntentFactory(user=user)
        PaymentIntent.objects.filter(pk__in=[stripe_old.pk, cryptomus_old.pk]).update(
            created_at=timezone.now() - timedelta(hours=2)
        )
        stripe_provider.verify_response = completed()
        cryptomus_provider.verify_response = VerifyPaymentResponse(success=True, status=PaymentStatus.FAILED)

        result = orchestrator.reconcile_stale_payments(timezone.now() - timedelta(minutes=15))

        assert result.data == {"checked": 2, "errors": 0, "completed": 1, "failed": 1}
        assert reload(stripe_old).status == PaymentStatus.COMPLETED
        assert reload(cryptomus_old).status == PaymentStatus.FAILED
        assert reload(recent).status == PaymentStatus.PENDING

    def test_counts_verification_errors(self, orchestrator, stripe_provider, pending_deposit):
        PaymentIntent.objects.filter(pk=pending_deposit.pk).update(created_at=timezone.now() - timedelta(hours=2))
        stripe_provider.verify_response = VerifyPaymentResponse(
            success=False, status=PaymentStatus.FAILED, error="timeout"
        )

        result = orchestrator.reconcile_stale_payments(timezone.now() - timedelta(minutes=15))

        assert result.data == {"checked": 1, "errors": 1}
        assert reload(pending_deposit).status == PaymentStatus.PENDING
