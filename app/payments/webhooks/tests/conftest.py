"""
Pytest fixtures for webhook tests.

Provides normalized events, stored WebhookEvent rows in each status and a
provider registry made of fake adapters for the webhook views.
"""

from decimal import Decimal

import pytest

from payments.adapters import NormalizedWebhookEvent, SubscriptionUpdate
from payments.state_machines import PaymentStatus, WebhookEventStatus
from payments.tests.factories import WebhookEventFactory


# =============================================================================
# Normalized Events
# =============================================================================


@pytest.fixture
def make_event():
    """
    Build a NormalizedWebhookEvent.

    Usage:
        event = make_event(PaymentStatus.COMPLETED, order_id=payment.order_id)
    """

    def _build(
        status=PaymentStatus.COMPLETED,
        order_id=None,
        payment_id="cs_test_unmatched",
        event_id="evt_test_1",
        event_type="checkout.session.completed",
        raw_data=None,
        subscription=None,
    ):
        return NormalizedWebhookEvent(
            event_id=event_id,
            type=event_type,
            payment_id=payment_id,
            status=status,
            metadata={"order_id": order_id} if order_id else {},
            raw_data=raw_data or {},
            subscription=subscription,
        )

    return _build


@pytest.fixture
def renewal_update():
    return SubscriptionUpdate(
        subscription_id="sub_test_renewing",
        kind=SubscriptionUpdate.RENEWAL,
        amount=Decimal("27.50"),
        currency="USD",
        invoice_id="in_test_renewal",
    )


# =============================================================================
# Stored Webhook Events
# =============================================================================


@pytest.fixture
def pending_webhook_event(db, pending_deposit):
    """Stored checkout completion for the pending deposit."""
    return WebhookEventFactory(
        payment_id=pending_deposit.provider_payment_id,
        metadata={"order_id": pending_deposit.order_id},
    )


@pytest.fixture
def processed_webhook_event(db):
    return WebhookEventFactory(status=WebhookEventStatus.PROCESSED, retry_count=1)


@pytest.fixture
def failed_webhook_event(db):
    return WebhookEventFactory(
        status=WebhookEventStatus.FAILED,
        retry_count=1,
        error_message="Previous processing error",
    )


# =============================================================================
# View Fixtures
# =============================================================================


@pytest.fixture
def fake_registry(mocker, stripe_provider, cryptomus_provider):
    """Serve the fake adapters to the webhook views."""
    registry = {"stripe": stripe_provider, "cryptomus": cryptomus_provider}
    mocker.patch("payments.webhooks.views.get_provider_registry", return_value=registry)
    return registry


@pytest.fixture
def mock_delay(mocker):
    """Capture process_webhook_event.delay calls instead of queueing."""
    return mocker.patch("payments.tasks.process_webhook_event.delay")
