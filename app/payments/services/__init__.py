"""
Payment services for coordinating payment operations.

This module provides:
- PaymentOrchestrator: Entry point for purchases, deposits, verification,
  webhook application and subscription lifecycle
- PaymentGateway: Persistence for payments, ledger entries, plans, wallets

Usage:
    from payments.services import get_payment_orchestrator

    result = get_payment_orchestrator().initiate_proxy_purchase(
        user, plan_type="residential", tier="basic", provider="stripe"
    )

    # Reconcile with the provider (idempotent)
    result = get_payment_orchestrator().verify_payment_status(order_id, user=user)
"""

from payments.services.payment_gateway import PaymentGateway
from payments.services.payment_orchestrator import (
    PaymentInitiation,
    PaymentOrchestrator,
    get_payment_orchestrator,
)

__all__ = [
    "PaymentGateway",
    "PaymentInitiation",
    "PaymentOrchestrator",
    "get_payment_orchestrator",
]
