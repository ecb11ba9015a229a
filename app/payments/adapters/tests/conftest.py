"""
Pytest fixtures for provider adapter tests.

Sections:
    - Stripe fixtures (adapter, signed webhook payloads)
    - Cryptomus fixtures (adapter over httpx.MockTransport)
    - Shared payment metadata
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from payments.adapters import CryptomusAdapter, PaymentMetadata, RecurringPaymentMetadata, StripeAdapter

STRIPE_API_KEY = "sk_test_adapter"
STRIPE_WEBHOOK_SECRET = "whsec_test_adapter"

CRYPTOMUS_MERCHANT_ID = "merchant-test-1"
CRYPTOMUS_PAYMENT_KEY = "cryptomus-payment-key"
CRYPTOMUS_API_BASE = "https://api.cryptomus.test"


# =============================================================================
# Shared Test Data
# =============================================================================


@pytest.fixture
def payment_metadata():
    """$50.00 wallet deposit request."""
    return PaymentMetadata(
        order_id="order_1718000000000_ab12cd34",
        user_id="42",
        amount=Decimal("50.00"),
        currency="USD",
        customer_email="customer@example.com",
        description="Wallet Deposit - USD 50.00",
        callback_url="https://app.example.com/api/v1/payments/webhooks/cryptomus/",
        extra={"type": "wallet_deposit"},
    )


@pytest.fixture
def recurring_metadata():
    """Monthly residential basic subscription request."""
    return RecurringPaymentMetadata(
        order_id="order_1718000000000_sub00001",
        user_id="42",
        amount=Decimal("27.50"),
        currency="USD",
        customer_email="customer@example.com",
        description="Residential Basic",
        extra={"plan_type": "residential", "plan_tier": "basic"},
        interval="month",
        interval_count=1,
    )


# =============================================================================
# Stripe Fixtures
# =============================================================================


@pytest.fixture
def stripe_adapter():
    return StripeAdapter(api_key=STRIPE_API_KEY, webhook_secret=STRIPE_WEBHOOK_SECRET)


@pytest.fixture
def signed_stripe_event():
    """
    Build a Stripe event payload and a valid Stripe-Signature header.

    Usage:
        payload, signature = signed_stripe_event("checkout.session.completed", {...})
    """

    def _build(event_type: str, obj: dict, event_id: str = "evt_test_1", secret: str = STRIPE_WEBHOOK_SECRET):
        payload = json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "data": {"object": obj},
            }
        ).encode("utf-8")
        timestamp = int(time.time())
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return payload, f"t={timestamp},v1={digest}"

    return _build


# =============================================================================
# Cryptomus Fixtures
# =============================================================================


class RecordingTransport:
    """Callable for httpx.MockTransport that records requests and replays one response."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.json_body: dict = {"state": 0, "result": {}}
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.json_body)


@pytest.fixture
def cryptomus_transport():
    return RecordingTransport()


@pytest.fixture
def cryptomus_adapter(cryptomus_transport):
    client = httpx.Client(base_url=CRYPTOMUS_API_BASE, transport=httpx.MockTransport(cryptomus_transport))
    return CryptomusAdapter(
        merchant_id=CRYPTOMUS_MERCHANT_ID,
        payment_key=CRYPTOMUS_PAYMENT_KEY,
        api_base=CRYPTOMUS_API_BASE,
        client=client,
    )


@pytest.fixture
def cryptomus_callback():
    """
    Build a Cryptomus callback body signed the way Cryptomus signs it.

    Returns (payload_bytes, signature).
    """

    def _build(body: dict, key: str = CRYPTOMUS_PAYMENT_KEY, embed: bool = True):
        canonical = json.dumps(dict(sorted(body.items())), separators=(",", ":"))
        signature = hmac.new(key.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()
        payload = {**body, "sign": signature} if embed else body
        return json.dumps(payload).encode("utf-8"), signature

    return _build
