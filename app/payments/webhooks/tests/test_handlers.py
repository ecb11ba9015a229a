"""
Tests for webhook event handlers.

Tests cover:
- Handler registry and dispatch
- Payment outcome handlers (completed, failed, canceled, refunded)
- Unmatched and out-of-order events
- Subscription renewal and cancellation handlers
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from core.services import ServiceResult
from payments.adapters import SubscriptionUpdate
from payments.models import PaymentIntent, ProxyPlanSubscription, TransactionRecord
from payments.state_machines import PaymentStatus
from payments.tests.factories import PaymentIntentFactory
from payments.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    handle_payment_completed,
    register_handler,
)


def reload(payment: PaymentIntent) -> PaymentIntent:
    return PaymentIntent.objects.get(pk=payment.pk)


# =============================================================================
# Registry Tests
# =============================================================================


class TestRegisterHandler:
    """Tests for the handler registry."""

    def test_payment_outcomes_are_registered(self):
        for outcome in ("completed", "failed", "canceled", "refunded"):
            assert outcome in WEBHOOK_HANDLERS

    def test_subscription_outcomes_are_registered(self):
        assert "subscription.renewal" in WEBHOOK_HANDLERS
        assert "subscription.cancellation" in WEBHOOK_HANDLERS

    def test_completed_maps_to_function(self):
        assert WEBHOOK_HANDLERS["completed"] is handle_payment_completed

    def test_register_new_handler(self, mocker, orchestrator, make_event):
        mocker.patch.dict(WEBHOOK_HANDLERS)

        @register_handler("pending")
        def handle_pending(orchestrator, event, provider):
            return ServiceResult.success(f"{provider}:{event.event_id}")

        result = dispatch_webhook(make_event(PaymentStatus.PENDING), "stripe", orchestrator=orchestrator)

        assert result.data == "stripe:evt_test_1"


# =============================================================================
# Dispatch Tests
# =============================================================================


@pytest.mark.django_db
class TestDispatchWebhook:
    def test_pending_event_is_a_noop(self, orchestrator, pending_deposit, make_event):
        event = make_event(PaymentStatus.PENDING, order_id=pending_deposit.order_id)

        result = dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert result.success is True
        assert result.data is None
        assert reload(pending_deposit).status == PaymentStatus.PENDING

    def test_uses_configured_orchestrator_by_default(self, patch_orchestrator, user, pending_deposit, make_event):
        dispatch_webhook(make_event(order_id=pending_deposit.order_id), "stripe")

        assert reload(pending_deposit).status == PaymentStatus.COMPLETED


# =============================================================================
# Payment Outcome Handlers
# =============================================================================


@pytest.mark.django_db
class TestHandlePaymentCompleted:
    def test_completes_by_order_id(self, orchestrator, user, pending_deposit, make_event):
        event = make_event(order_id=pending_deposit.order_id, raw_data={"payment_intent": "pi_test_7"})

        result = dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert result.success is True
        payment = reload(pending_deposit)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.metadata["payment_intent_id"] == "pi_test_7"
        user.refresh_from_db()
        assert user.wallet_balance == Decimal("50.00")

    def test_completes_by_provider_payment_id(self, orchestrator, pending_deposit, make_event):
        event = make_event(payment_id=pending_deposit.provider_payment_id)

        dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert reload(pending_deposit).status == PaymentStatus.COMPLETED

    def test_cryptomus_completion_keeps_network_details(self, orchestrator, user, make_event):
        payment = PaymentIntentFactory(user=user, provider="cryptomus", provider_payment_id="uuid-42")
        event = make_event(
            order_id=payment.order_id,
            payment_id="uuid-42",
            event_id="uuid-42:paid",
            event_type="payment_paid",
            raw_data={"uuid": "uuid-42", "network": "tron", "payer_currency": "USDT", "payer_amount": "50.12"},
        )

        dispatch_webhook(event, "cryptomus", orchestrator=orchestrator)

        metadata = reload(payment).metadata
        assert metadata["network"] == "tron"
        assert metadata["payer_currency"] == "USDT"

    def test_order_of_other_provider_is_not_matched(self, orchestrator, pending_deposit, make_event):
        event = make_event(order_id=pending_deposit.order_id, payment_id="uuid-unknown")

        result = dispatch_webhook(event, "cryptomus", orchestrator=orchestrator)

        assert result.success is True
        assert reload(pending_deposit).status == PaymentStatus.PENDING

    def test_unknown_payment_is_acknowledged(self, orchestrator, make_event, db):
        result = dispatch_webhook(make_event(order_id="order_missing"), "stripe", orchestrator=orchestrator)

        assert result.success is True
        assert result.data is None

    def test_retried_event_applies_once(self, orchestrator, user, pending_deposit, make_event):
        event = make_event(order_id=pending_deposit.order_id)

        for _ in range(3):
            assert dispatch_webhook(event, "stripe", orchestrator=orchestrator).success

        user.refresh_from_db()
        assert user.wallet_balance == Decimal("50.00")
        assert TransactionRecord.objects.filter(user=user).count() == 1

    def test_completion_after_refund_is_acknowledged(self, orchestrator, user, make_event):
        payment = PaymentIntentFactory(user=user, status=PaymentStatus.REFUNDED)

        result = dispatch_webhook(make_event(order_id=payment.order_id), "stripe", orchestrator=orchestrator)

        assert result.success is True
        assert reload(payment).status == PaymentStatus.REFUNDED
        assert not TransactionRecord.objects.exists()

    def test_purchase_activates_subscription_plan(self, orchestrator, user, pending_purchase, make_event):
        event = make_event(
            order_id=pending_purchase.order_id,
            raw_data={"id": pending_purchase.provider_payment_id, "subscription": "sub_test_checkout"},
        )

        dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        plan = ProxyPlanSubscription.objects.get(user=user)
        assert plan.stripe_subscription_id == "sub_test_checkout"
        assert plan.is_active is True


@pytest.mark.django_db
class TestHandlePaymentFailed:
    def test_stores_provider_error_message(self, orchestrator, pending_deposit, make_event):
        event = make_event(
            PaymentStatus.FAILED,
            order_id=pending_deposit.order_id,
            event_type="payment_intent.payment_failed",
            raw_data={"last_payment_error": {"message": "Your card has insufficient funds."}},
        )

        dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        payment = reload(pending_deposit)
        assert payment.status == PaymentStatus.FAILED
        assert payment.error == "Your card has insufficient funds."

    def test_default_reason_names_event_type(self, orchestrator, pending_deposit, make_event):
        event = make_event(
            PaymentStatus.FAILED,
            order_id=pending_deposit.order_id,
            event_type="payment_fail",
        )

        dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert "payment_fail" in reload(pending_deposit).error

    def test_late_failure_does_not_regress_completed(self, orchestrator, completed_deposit, make_event):
        event = make_event(PaymentStatus.FAILED, order_id=completed_deposit.order_id)

        result = dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert result.success is True
        assert reload(completed_deposit).status == PaymentStatus.COMPLETED


@pytest.mark.django_db
class TestHandlePaymentCanceledAndRefunded:
    def test_expired_session_cancels(self, orchestrator, pending_deposit, make_event):
        event = make_event(
            PaymentStatus.CANCELED,
            order_id=pending_deposit.order_id,
            event_type="checkout.session.expired",
        )

        dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert reload(pending_deposit).status == PaymentStatus.CANCELED

    def test_refund_marks_completed_payment_refunded(self, orchestrator, completed_deposit, make_event):
        event = make_event(
            PaymentStatus.REFUNDED,
            payment_id=completed_deposit.provider_payment_id,
            event_type="charge.refunded",
        )

        dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        payment = reload(completed_deposit)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_at is not None


# =============================================================================
# Subscription Lifecycle Handlers
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionHandlers:
    def test_renewal_records_payment(self, orchestrator, plan_subscription, renewal_update, make_event):
        event = make_event(
            payment_id="in_test_renewal",
            event_type="invoice.paid",
            subscription=renewal_update,
        )

        result = dispatch_webhook(event, "stripe", orchestrator=orchestrator)

        assert result.success is True
        assert result.data.metadata["invoice_id"] == "in_test_renewal"
        plan_subscription.refresh_from_db()
        assert plan_subscription.last_payment_id == result.data.pk

    def test_renewal_for_unknown_subscription_is_acknowledged(self, orchestrator, make_event, db):
        update = SubscriptionUpdate(subscription_id="sub_unknown", kind=SubscriptionUpdate.RENEWAL)

        result = dispatch_webhook(make_event(subscription=update), "stripe", orchestrator=orchestrator)

        assert result.success is True
        assert not PaymentIntent.objects.exists()

    def test_cancellation_at_period_end(self, orchestrator, plan_subscription, make_event):
        period_end = timezone.now() + timedelta(days=20)
        update = SubscriptionUpdate(
            subscription_id="sub_test_renewing",
            kind=SubscriptionUpdate.CANCELLATION,
            cancel_at_period_end=True,
            period_end=period_end,
        )

        dispatch_webhook(
            make_event(event_type="customer.subscription.updated", subscription=update),
            "stripe",
            orchestrator=orchestrator,
        )

        plan_subscription.refresh_from_db()
        assert plan_subscription.cancel_at_period_end is True
        assert plan_subscription.scheduled_cancellation_at == period_end

    def test_immediate_cancellation(self, orchestrator, plan_subscription, make_event):
        update = SubscriptionUpdate(
            subscription_id="sub_test_renewing",
            kind=SubscriptionUpdate.CANCELLATION,
            canceled_immediately=True,
        )

        dispatch_webhook(
            make_event(event_type="customer.subscription.deleted", subscription=update),
            "stripe",
            orchestrator=orchestrator,
        )

        plan_subscription.refresh_from_db()
        assert plan_subscription.is_active is False


# =============================================================================
# Synchronous Webhook Handling
# =============================================================================


@pytest.mark.django_db
class TestOrchestratorHandleWebhook:
    def test_invalid_signature_writes_nothing(self, orchestrator, stripe_provider, pending_deposit, make_event):
        stripe_provider.webhook_event = make_event(order_id=pending_deposit.order_id)

        result = orchestrator.handle_webhook("stripe", b"{}", "forged")

        assert result.success is False
        assert result.error_code == "INVALID_SIGNATURE"
        assert reload(pending_deposit).status == PaymentStatus.PENDING

    def test_valid_event_is_applied(self, orchestrator, stripe_provider, pending_deposit, make_event):
        stripe_provider.webhook_event = make_event(order_id=pending_deposit.order_id)

        result = orchestrator.handle_webhook("stripe", b"{}", "valid")

        assert result.success is True
        assert reload(pending_deposit).status == PaymentStatus.COMPLETED

    def test_unknown_provider(self, orchestrator, db):
        result = orchestrator.handle_webhook("paypal", b"{}", "valid")

        assert result.error_code == "PROVIDER_UNAVAILABLE"
