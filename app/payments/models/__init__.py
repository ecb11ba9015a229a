"""
Payment domain models.

This module contains all payment-related models:
- PaymentIntent: One payment attempt, FSM-managed status
- TransactionRecord: Immutable ledger entry for a completed payment
- ProxyPlanSubscription: Proxy plan held by a user, with renewal state
- WebhookEvent: Verified webhook deliveries for idempotent processing
"""

from payments.models.payment_intent import PaymentIntent
from payments.models.proxy_plan import ProxyPlanSubscription
from payments.models.transaction_record import TransactionRecord
from payments.models.webhook_event import MAX_WEBHOOK_RETRIES, WebhookEvent

__all__ = [
    "MAX_WEBHOOK_RETRIES",
    "PaymentIntent",
    "ProxyPlanSubscription",
    "TransactionRecord",
    "WebhookEvent",
]
