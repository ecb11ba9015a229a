"""
Payments app for proxy plan purchases and wallet deposits.

This app handles:
- Checkout through Stripe (cards, subscriptions) or Cryptomus (crypto)
- Payment verification and reconciliation
- Wallet credits and proxy plan activation on completion
- Webhook event handling for both providers

Related apps:
    - authentication: User model and wallet balance

Usage:
    from payments.services import get_payment_orchestrator

    result = get_payment_orchestrator().initiate_wallet_deposit(
        user, Decimal("50.00"), provider="stripe"
    )
"""
