"""
Webhook handling for payment events from Stripe and Cryptomus.

Webhooks are verified by the provider adapter, stored idempotently as
WebhookEvent rows, and processed asynchronously via Celery tasks.

Usage:
    # In urls.py
    from payments.webhooks.views import cryptomus_webhook, stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
        path("webhooks/cryptomus/", cryptomus_webhook, name="cryptomus_webhook"),
    ]
"""

from payments.webhooks.handlers import dispatch_webhook, register_handler
from payments.webhooks.views import cryptomus_webhook, stripe_webhook

__all__ = [
    "cryptomus_webhook",
    "dispatch_webhook",
    "register_handler",
    "stripe_webhook",
]
