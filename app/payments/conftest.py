"""
Pytest fixtures for payment tests.

Provides users, payments in each status, fake provider adapters and an
orchestrator wired to them. Tests never talk to Stripe, Cryptomus or
Redis.
"""

import pytest

from authentication.tests.factories import UserFactory
from payments.services import PaymentOrchestrator
from payments.state_machines import PaymentStatus
from payments.tests.factories import (
    PaymentIntentFactory,
    ProxyPlanSubscriptionFactory,
    ProxyPurchaseFactory,
)
from payments.tests.fakes import FakeProvider

BASE_URL = "https://app.example.com"


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Create a test user with an empty wallet."""
    return UserFactory()


@pytest.fixture
def other_user(db):
    return UserFactory()


# =============================================================================
# Provider & Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def stripe_provider():
    return FakeProvider("stripe")


@pytest.fixture
def cryptomus_provider():
    return FakeProvider("cryptomus", supports_cancellation=False, supports_refunds=False)


@pytest.fixture
def orchestrator(stripe_provider, cryptomus_provider):
    """Orchestrator using fake adapters for both providers."""
    return PaymentOrchestrator(
        providers={"stripe": stripe_provider, "cryptomus": cryptomus_provider},
        base_url=BASE_URL,
    )


@pytest.fixture
def patch_orchestrator(mocker, orchestrator):
    """Make get_payment_orchestrator() return the fake-backed orchestrator."""
    mocker.patch("payments.services.get_payment_orchestrator", return_value=orchestrator)
    mocker.patch("payments.views.get_payment_orchestrator", return_value=orchestrator)
    return orchestrator


# =============================================================================
# Payment State Fixtures
# =============================================================================


@pytest.fixture
def pending_deposit(db, user):
    """Pending $50.00 Stripe wallet deposit."""
    return PaymentIntentFactory(user=user)


@pytest.fixture
def completed_deposit(db, user):
    return PaymentIntentFactory(user=user, status=PaymentStatus.COMPLETED)


@pytest.fixture
def pending_purchase(db, user):
    """Pending recurring residential basic purchase through Stripe."""
    return ProxyPurchaseFactory(user=user)


@pytest.fixture
def plan_subscription(db, user):
    """Active recurring residential plan with a Stripe subscription id."""
    return ProxyPlanSubscriptionFactory(user=user, stripe_subscription_id="sub_test_renewing")


# =============================================================================
# Redis Fixtures
# =============================================================================


@pytest.fixture
def mock_redis(mocker):
    """
    Mock Redis client for distributed lock tests.

    Returns a MagicMock configured so every lock is free.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    mocker.patch("payments.locks.get_redis_connection", return_value=mock_client)
    return mock_client
