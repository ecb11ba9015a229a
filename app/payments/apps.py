"""
Payments app configuration.

This app provides:
- Provider adapters (Stripe, Cryptomus) behind one contract
- Payment orchestration with idempotent completion
- Webhook intake and async processing
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"
