"""
Payment orchestrator: provider-agnostic payment business logic.

The orchestrator is the entry point for every payment operation. It
validates input, persists a pending PaymentIntent, hands the request to
the adapter chosen by provider id and turns every adapter outcome into a
persisted status transition.

Completion (wallet credit or plan activation) has exactly one code path,
``complete_payment``, shared by the verification endpoint, webhook
processing and the stale-payment sweep. It runs under a row lock and is a
no-op for an order that is already completed, so retried webhooks and
repeated verification calls never apply a side effect twice.

Adapters are injected, which keeps tests free of environment mutation:

    orchestrator = PaymentOrchestrator(
        providers={"stripe": fake_adapter},
        base_url="http://localhost:3000",
    )

Usage:
    from payments.services import get_payment_orchestrator

    result = get_payment_orchestrator().initiate_wallet_deposit(
        user, Decimal("50.00"), provider="stripe"
    )
    if result.success:
        return redirect(result.data.redirect_url)
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from django.conf import settings

from core.services import BaseService, ServiceResult

from payments.adapters.base import (
    CURRENCY_PATTERN,
    NormalizedWebhookEvent,
    PaymentMetadata,
    PaymentProvider,
    RecurringPaymentMetadata,
    SubscriptionUpdate,
)
from payments.exceptions import (
    PaymentNotFoundError,
    PaymentValidationError,
    ReconciliationConflict,
    SignatureError,
)
from payments.models import PaymentIntent
from payments.plans import get_plan
from payments.services.payment_gateway import PaymentGateway
from payments.state_machines import (
    BillingInterval,
    PaymentPurpose,
    PaymentStatus,
    TransactionType,
)

if TYPE_CHECKING:
    from authentication.models import User
    from payments.models import ProxyPlanSubscription


# billing cycle -> (interval, price multiplier)
BILLING_CYCLES = {
    "monthly": (BillingInterval.MONTH, 1),
    "yearly": (BillingInterval.YEAR, 12),
}

# provider fields worth keeping on the payment after verification
PROVIDER_DETAIL_KEYS = (
    "subscription_id",
    "payment_intent_id",
    "network",
    "payer_amount",
    "payer_currency",
)

CRYPTOMUS_CALLBACK_PATH = "/api/v1/payments/webhooks/cryptomus/"


@dataclass
class PaymentInitiation:
    """Result of a successful purchase/deposit initiation."""

    order_id: str
    redirect_url: str
    payment: PaymentIntent


class PaymentOrchestrator(BaseService):
    """
    Coordinates adapters, the persistence gateway and side effects.

    Args:
        providers: Adapter per provider id
        base_url: Public application URL used for redirect URLs
        gateway: Persistence gateway class
        default_currency: Currency for plan purchases and deposits
    """

    def __init__(
        self,
        providers: Mapping[str, PaymentProvider],
        base_url: str,
        gateway: type[PaymentGateway] = PaymentGateway,
        default_currency: str = "USD",
    ):
        self.providers = dict(providers)
        self.base_url = base_url.rstrip("/")
        self.gateway = gateway
        self.default_currency = default_currency.upper()

    def get_provider(self, provider_id: str) -> PaymentProvider:
        """
        Raises:
            PaymentValidationError: Provider is unknown or not configured
        """
        provider = self.providers.get(provider_id)
        if provider is None:
            raise PaymentValidationError(
                f"Payment provider '{provider_id}' is not available",
                error_code="PROVIDER_UNAVAILABLE",
                details={"provider": provider_id, "available": sorted(self.providers)},
            )
        return provider

    # =========================================================================
    # Initiation
    # =========================================================================

    def initiate_proxy_purchase(
        self,
        user: User,
        plan_type: str,
        tier: str,
        provider: str,
        billing_cycle: str = "monthly",
        recurring: bool | None = None,
    ) -> ServiceResult[PaymentInitiation]:
        """
        Start a proxy plan purchase.

        Recurring plans are billed as subscriptions unless ``recurring`` is
        False. One-time plans cannot be bought as subscriptions.
        """
        try:
            plan = get_plan(plan_type, tier)
            adapter = self.get_provider(provider)
            recurring = plan.is_recurring if recurring is None else recurring
            if recurring and not plan.is_recurring:
                raise PaymentValidationError(
                    "This plan cannot be billed as a subscription",
                    error_code="RECURRING_NOT_SUPPORTED",
                    details={"plan_type": plan_type, "tier": tier},
                )
            if billing_cycle not in BILLING_CYCLES:
                raise PaymentValidationError(
                    "Invalid billing cycle",
                    error_code="INVALID_BILLING_CYCLE",
                    details={"billing_cycle": billing_cycle},
                )
        except PaymentValidationError as e:
            return self.handle_exception(e, "Proxy purchase rejected", logging.WARNING)

        interval, multiplier = BILLING_CYCLES[billing_cycle]
        amount = plan.price * multiplier if recurring else plan.price
        order_id = self.gateway.generate_order_id()

        self.get_logger().info(
            "Initiating proxy purchase",
            extra={
                "order_id": order_id,
                "user_id": user.pk,
                "provider": provider,
                "plan_type": plan_type,
                "tier": tier,
                "recurring": recurring,
            },
        )

        self.gateway.create_payment(
            order_id=order_id,
            user=user,
            provider=provider,
            amount=amount,
            currency=self.default_currency,
            payment_type=PaymentPurpose.PROXY_PURCHASE,
            is_recurring=recurring,
            metadata={
                "plan_type": plan_type,
                "plan_tier": tier,
                "plan_name": plan.name,
                "bandwidth": plan.bandwidth,
                "is_recurring": recurring,
                "billing_cycle": billing_cycle if recurring else None,
            },
        )

        success_url, cancel_url = self.build_redirect_urls(
            order_id, provider, planType=plan_type, planTier=tier
        )

        common = {
            "order_id": order_id,
            "user_id": str(user.pk),
            "amount": amount,
            "currency": self.default_currency,
            "customer_email": user.email,
            "description": plan.name,
            "callback_url": self.cryptomus_callback_url,
            "extra": {"plan_type": plan_type, "plan_tier": tier},
        }
        request: PaymentMetadata
        if recurring:
            request = RecurringPaymentMetadata(**common, interval=interval, interval_count=1)
        else:
            request = PaymentMetadata(**common)

        return self._start_checkout(adapter, user, request, success_url, cancel_url, recurring)

    def initiate_wallet_deposit(
        self,
        user: User,
        amount: Decimal | str,
        provider: str,
        currency: str | None = None,
    ) -> ServiceResult[PaymentInitiation]:
        """Start a wallet top-up of ``amount`` (major units)."""
        try:
            amount = self._validate_amount(amount)
            currency = self._validate_currency(currency or self.default_currency)
            adapter = self.get_provider(provider)
        except PaymentValidationError as e:
            return self.handle_exception(e, "Wallet deposit rejected", logging.WARNING)

        order_id = self.gateway.generate_order_id()
        self.get_logger().info(
            "Initiating wallet deposit",
            extra={"order_id": order_id, "user_id": user.pk, "provider": provider, "amount": str(amount)},
        )

        self.gateway.create_payment(
            order_id=order_id,
            user=user,
            provider=provider,
            amount=amount,
            currency=currency,
            payment_type=PaymentPurpose.WALLET_DEPOSIT,
        )

        success_url, cancel_url = self.build_redirect_urls(
            order_id, provider, amount=str(amount), type=PaymentPurpose.WALLET_DEPOSIT.value
        )
        request = PaymentMetadata(
            order_id=order_id,
            user_id=str(user.pk),
            amount=amount,
            currency=currency,
            customer_email=user.email,
            description=f"Wallet Deposit - {currency} {amount}",
            callback_url=self.cryptomus_callback_url,
            extra={"type": PaymentPurpose.WALLET_DEPOSIT.value},
        )
        return self._start_checkout(adapter, user, request, success_url, cancel_url, recurring=False)

    def _validate_currency(self, currency: str) -> str:
        if not CURRENCY_PATTERN.fullmatch(currency):
            raise PaymentValidationError(
                "Currency must be a 3-letter ISO code",
                error_code="INVALID_CURRENCY",
                details={"currency": currency},
            )
        return currency.upper()

    def _validate_amount(self, amount: Decimal | str) -> Decimal:
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise PaymentValidationError(
                "Amount must be a number",
                error_code="INVALID_AMOUNT",
                details={"amount": str(amount)},
            ) from None
        if not value.is_finite() or value <= 0:
            raise PaymentValidationError(
                "Amount must be greater than zero",
                error_code="INVALID_AMOUNT",
                details={"amount": str(amount)},
            )
        if value != value.quantize(Decimal("0.01")):
            raise PaymentValidationError(
                "Amount cannot have more than two decimal places",
                error_code="INVALID_AMOUNT",
                details={"amount": str(amount)},
            )
        return value.quantize(Decimal("0.01"))

    def _start_checkout(
        self,
        adapter: PaymentProvider,
        user: User,
        request: PaymentMetadata,
        success_url: str,
        cancel_url: str,
        recurring: bool,
    ) -> ServiceResult[PaymentInitiation]:
        """Call the adapter and record its outcome on the pending payment."""
        logger = self.get_logger()
        order_id = request.order_id

        try:
            if recurring:
                response = adapter.create_recurring_payment(user, request, success_url, cancel_url)
            else:
                response = adapter.create_one_time_payment(user, request, success_url, cancel_url)
        except Exception as e:
            self.gateway.mark_payment_failed(order_id, f"Unexpected provider error: {e}")
            raise

        if not response.success or not response.redirect_url:
            reason = response.error or "Payment provider did not return a checkout URL"
            self.gateway.mark_payment_failed(order_id, reason)
            logger.warning(
                "Payment provider rejected checkout",
                extra={"order_id": order_id, "provider": adapter.provider_id, "error": reason},
            )
            return ServiceResult.failure(reason, error_code="PROVIDER_ERROR")

        payment = self.gateway.update_payment(
            order_id,
            checkout_url=response.redirect_url,
            provider_payment_id=response.payment_id or "",
            provider_reference=response.provider_reference or "",
        )
        logger.info(
            "Checkout created",
            extra={"order_id": order_id, "provider": adapter.provider_id, "payment_id": response.payment_id},
        )
        return ServiceResult.success(
            PaymentInitiation(order_id=order_id, redirect_url=response.redirect_url, payment=payment)
        )

    # =========================================================================
    # Redirect URLs
    # =========================================================================

    def build_redirect_urls(self, order_id: str, provider: str, **params: str) -> tuple[str, str]:
        """Return (success_url, cancel_url), both carrying orderId and provider."""
        query = urlencode({"orderId": order_id, "provider": provider, **params})
        return (
            f"{self.base_url}/dashboard/billing/success?{query}",
            f"{self.base_url}/dashboard/billing/cancel?{query}",
        )

    @property
    def cryptomus_callback_url(self) -> str:
        return f"{self.base_url}{CRYPTOMUS_CALLBACK_PATH}"

    # =========================================================================
    # Verification & Completion
    # =========================================================================

    def verify_payment_status(self, order_id: str, user: User | None = None) -> ServiceResult[PaymentIntent]:
        """
        Reconcile a payment with its provider.

        Terminal payments are returned as they are without a provider call,
        so this is safe to call any number of times.
        """
        try:
            payment = self.gateway.get_payment_by_order_id(order_id, user=user)
        except PaymentNotFoundError as e:
            return self.handle_exception(e, "Verification for unknown order", logging.WARNING)

        if payment.is_terminal:
            return ServiceResult.success(payment)

        if not payment.provider_payment_id:
            return ServiceResult.failure(
                "Payment has no provider reference yet",
                error_code="MISSING_PROVIDER_REFERENCE",
            )

        try:
            adapter = self.get_provider(payment.provider)
        except PaymentValidationError as e:
            return self.handle_exception(e, "Verification provider unavailable", logging.WARNING)

        response = adapter.verify_payment(payment.provider_payment_id)
        if not response.success:
            self.get_logger().warning(
                "Payment verification failed",
                extra={"order_id": order_id, "provider": payment.provider, "error": response.error},
            )
            return ServiceResult.failure(
                response.error or "Verification failed",
                error_code="PROVIDER_ERROR",
            )

        return self._apply_status(
            order_id,
            response.status,
            source="verification",
            provider_details=response.metadata,
            reason="Payment failed at provider",
        )

    def _apply_status(
        self,
        order_id: str,
        status: str,
        source: str,
        provider_details: dict[str, Any] | None = None,
        reason: str = "",
    ) -> ServiceResult[PaymentIntent]:
        if status == PaymentStatus.COMPLETED:
            return self.complete_payment(order_id, source, provider_details)
        if status == PaymentStatus.FAILED:
            return self.fail_payment(order_id, reason or "Payment failed at provider")
        if status == PaymentStatus.CANCELED:
            return self.mark_canceled(order_id)
        if status == PaymentStatus.REFUNDED:
            return self.mark_refunded(order_id)
        return ServiceResult.success(self.gateway.get_payment_by_order_id(order_id))

    def complete_payment(
        self,
        order_id: str,
        source: str,
        provider_details: dict[str, Any] | None = None,
    ) -> ServiceResult[PaymentIntent]:
        """
        Mark a payment completed and apply its side effect exactly once.

        Steps, in one transaction under a row lock:
            1. pending -> completed (already completed: return success, no-op)
            2. create the TransactionRecord
            3. credit the wallet or activate the proxy plan

        A payment in another terminal status is left untouched and reported
        as RECONCILIATION_CONFLICT.
        """
        logger = self.get_logger()
        details = {
            key: provider_details[key] for key in PROVIDER_DETAIL_KEYS if (provider_details or {}).get(key)
        }

        try:
            with self.atomic():
                payment, changed = self.gateway.mark_payment_completed(order_id)
                if not changed:
                    logger.info(
                        "Payment already completed",
                        extra={"order_id": order_id, "source": source},
                    )
                    return ServiceResult.success(payment)

                if details:
                    payment = self.gateway.update_payment(order_id, metadata=details)

                self._apply_completion_side_effects(payment)
        except ReconciliationConflict as e:
            return self.handle_exception(e, f"Completion from {source} ignored", logging.WARNING)
        except PaymentNotFoundError as e:
            return self.handle_exception(e, f"Completion from {source} for unknown order", logging.WARNING)

        logger.info(
            "Payment completed",
            extra={
                "order_id": order_id,
                "source": source,
                "payment_type": payment.payment_type,
                "amount": str(payment.amount),
            },
        )
        return ServiceResult.success(payment)

    def _apply_completion_side_effects(self, payment: PaymentIntent) -> None:
        if payment.payment_type == PaymentPurpose.WALLET_DEPOSIT:
            _, created = self.gateway.create_transaction_record(
                payment,
                TransactionType.DEPOSIT,
                f"Wallet deposit of {payment.currency} {payment.amount}",
            )
            if created:
                self.gateway.update_user_wallet_balance(payment.user_id, payment.amount, payment)
            return

        plan = get_plan(payment.metadata.get("plan_type", ""), payment.metadata.get("plan_tier", ""))
        _, created = self.gateway.create_transaction_record(
            payment,
            TransactionType.PURCHASE,
            f"Purchase of {plan.name} proxy plan",
            metadata={
                "plan_type": plan.plan_type,
                "plan_tier": plan.tier,
                "plan_name": plan.name,
                "bandwidth": plan.bandwidth,
                "is_recurring": payment.is_recurring,
            },
        )
        if created:
            self.gateway.activate_proxy_plan(
                payment.user,
                plan,
                payment,
                stripe_subscription_id=payment.metadata.get("subscription_id") or "",
            )

    # =========================================================================
    # Failure, Cancellation, Refunds
    # =========================================================================

    def fail_payment(self, order_id: str, reason: str) -> ServiceResult[PaymentIntent]:
        return self._transition(self.gateway.mark_payment_failed, order_id, reason=reason)

    def mark_refunded(self, order_id: str) -> ServiceResult[PaymentIntent]:
        return self._transition(self.gateway.mark_payment_refunded, order_id)

    def mark_canceled(self, order_id: str, user: User | None = None) -> ServiceResult[PaymentIntent]:
        return self._transition(self.gateway.mark_payment_canceled, order_id, user=user)

    def _transition(self, mark, order_id: str, **kwargs: Any) -> ServiceResult[PaymentIntent]:
        try:
            payment, _ = mark(order_id, **kwargs)
        except (ReconciliationConflict, PaymentNotFoundError) as e:
            return self.handle_exception(e, f"Status update for {order_id} ignored", logging.WARNING)
        return ServiceResult.success(payment)

    def cancel_payment(self, order_id: str, user: User | None = None) -> ServiceResult[PaymentIntent]:
        """
        Cancel a pending payment.

        Providers that support cancellation are asked first; if they refuse,
        the local record stays pending so a late completion is not lost.
        """
        try:
            payment = self.gateway.get_payment_by_order_id(order_id, user=user)
        except PaymentNotFoundError as e:
            return self.handle_exception(e, "Cancel for unknown order", logging.WARNING)

        if payment.status != PaymentStatus.PENDING:
            return ServiceResult.failure(
                f"Payment is already {payment.status}",
                error_code="PAYMENT_NOT_CANCELABLE",
            )

        adapter = self.providers.get(payment.provider)
        if adapter is not None and adapter.supports_cancellation and payment.provider_payment_id:
            response = adapter.cancel_payment(payment.provider_payment_id)
            if not response.success:
                self.get_logger().warning(
                    "Provider refused cancellation",
                    extra={"order_id": order_id, "provider": payment.provider, "error": response.error},
                )
                return ServiceResult.failure(
                    response.error or "Cancellation failed",
                    error_code="PROVIDER_ERROR",
                )

        return self.mark_canceled(order_id, user=user)

    def refund_payment(self, order_id: str, amount: Decimal | None = None) -> ServiceResult[PaymentIntent]:
        """
        Refund a completed payment at its provider.

        A full refund moves the payment to refunded immediately; a partial
        refund is recorded in metadata and the payment stays completed.
        """
        try:
            payment = self.gateway.get_payment_by_order_id(order_id)
            if amount is not None:
                amount = self._validate_amount(amount)
        except (PaymentNotFoundError, PaymentValidationError) as e:
            return self.handle_exception(e, "Refund rejected", logging.WARNING)

        if payment.status != PaymentStatus.COMPLETED:
            return ServiceResult.failure(
                f"Only completed payments can be refunded (status: {payment.status})",
                error_code="PAYMENT_NOT_REFUNDABLE",
            )
        if amount is not None and amount > payment.amount:
            return ServiceResult.failure(
                "Refund amount exceeds payment amount",
                error_code="INVALID_AMOUNT",
            )

        adapter = self.providers.get(payment.provider)
        if adapter is None or not adapter.supports_refunds:
            return ServiceResult.failure(
                f"Refunds are not supported for {payment.provider}",
                error_code="REFUND_NOT_SUPPORTED",
            )

        response = adapter.refund_payment(payment.provider_payment_id, amount)
        if not response.success:
            return ServiceResult.failure(response.error or "Refund failed", error_code="PROVIDER_ERROR")

        self.get_logger().info(
            "Refund issued",
            extra={"order_id": order_id, "refund_id": response.refund_id, "amount": str(amount or payment.amount)},
        )

        if amount is None or amount == payment.amount:
            return self.mark_refunded(order_id)

        refunds = [*payment.metadata.get("partial_refunds", []), {"refund_id": response.refund_id, "amount": str(amount)}]
        payment = self.gateway.update_payment(order_id, metadata={"partial_refunds": refunds})
        return ServiceResult.success(payment)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def handle_webhook(
        self,
        provider: str,
        payload: bytes,
        signature: str | None,
    ) -> ServiceResult[Any]:
        """
        Verify a webhook and apply it synchronously.

        An invalid signature is reported as INVALID_SIGNATURE and nothing
        is written.
        """
        try:
            adapter = self.get_provider(provider)
            event = adapter.handle_webhook(payload, signature)
        except (PaymentValidationError, SignatureError) as e:
            return self.handle_exception(e, f"{provider} webhook rejected", logging.WARNING)
        return self.apply_webhook_event(event, provider)

    def apply_webhook_event(self, event: NormalizedWebhookEvent, provider: str) -> ServiceResult[Any]:
        """Route an already verified event to its handler."""
        from payments.webhooks.handlers import dispatch_webhook

        return dispatch_webhook(event, provider, orchestrator=self)

    def resolve_webhook_payment(self, event: NormalizedWebhookEvent, provider: str) -> PaymentIntent | None:
        """Find the payment an event refers to: metadata order_id first, then provider ids."""
        if event.order_id:
            try:
                payment = self.gateway.get_payment_by_order_id(event.order_id)
            except PaymentNotFoundError:
                payment = None
            if payment is not None and payment.provider == provider:
                return payment
        return self.gateway.get_payment_by_provider_reference(provider, event.payment_id)

    # =========================================================================
    # Subscription Lifecycle
    # =========================================================================

    def process_subscription_renewal(
        self,
        update: SubscriptionUpdate,
        provider: str,
    ) -> ServiceResult[PaymentIntent | None]:
        """
        Record a paid billing period.

        Each period gets its own PaymentIntent (new order id, completed
        immediately) and TransactionRecord; the plan's renewal dates move
        forward. A repeated invoice id returns the existing payment. A
        zero-amount invoice only moves the renewal dates and returns None.
        """
        plan_subscription = self.gateway.get_plan_subscription(update.subscription_id)
        if plan_subscription is None:
            self.get_logger().warning(
                "Renewal for unknown subscription",
                extra={"subscription_id": update.subscription_id, "provider": provider},
            )
            return ServiceResult.failure("Subscription not found", error_code="SUBSCRIPTION_NOT_FOUND")

        plan = get_plan(plan_subscription.plan_type, plan_subscription.tier)
        if update.amount is not None and update.amount <= 0:
            # Nothing was charged: extend the plan without a payment or ledger row.
            with self.atomic():
                plan_subscription = self.gateway.lock_plan_subscription(plan_subscription)
                self.gateway.record_plan_renewal(plan_subscription, None, update.period_end)
            self.get_logger().info(
                "Zero-amount renewal recorded",
                extra={"subscription_id": update.subscription_id, "invoice_id": update.invoice_id},
            )
            return ServiceResult.success(None)

        order_id = self.gateway.generate_order_id()
        metadata = {
            "plan_type": plan.plan_type,
            "plan_tier": plan.tier,
            "plan_name": plan.name,
            "bandwidth": plan.bandwidth,
            "is_recurring": True,
            "renewal": True,
            "subscription_id": update.subscription_id,
            "invoice_id": update.invoice_id,
        }

        with self.atomic():
            # Concurrent deliveries of one invoice serialize on the plan row.
            plan_subscription = self.gateway.lock_plan_subscription(plan_subscription)
            if update.invoice_id:
                existing = self.gateway.get_renewal_payment(update.invoice_id)
                if existing is not None:
                    return ServiceResult.success(existing)

            self.gateway.create_payment(
                order_id=order_id,
                user=plan_subscription.user,
                provider=provider,
                amount=update.amount if update.amount is not None else plan.price,
                currency=update.currency or self.default_currency,
                payment_type=PaymentPurpose.PROXY_PURCHASE,
                metadata=metadata,
                is_recurring=True,
            )
            payment, _ = self.gateway.mark_payment_completed(order_id)
            self.gateway.create_transaction_record(
                payment,
                TransactionType.PURCHASE,
                f"Subscription renewal for {plan.plan_type} {plan.tier} plan",
                metadata=metadata,
            )
            self.gateway.record_plan_renewal(plan_subscription, payment, update.period_end)

        self.get_logger().info(
            "Subscription renewed",
            extra={
                "order_id": order_id,
                "subscription_id": update.subscription_id,
                "next_renewal_at": update.period_end.isoformat() if update.period_end else None,
            },
        )
        return ServiceResult.success(payment)

    def process_subscription_cancellation(
        self,
        update: SubscriptionUpdate,
        provider: str,
    ) -> ServiceResult[ProxyPlanSubscription]:
        """Deactivate the plan now, or schedule deactivation at period end."""
        plan_subscription = self.gateway.get_plan_subscription(update.subscription_id)
        if plan_subscription is None:
            self.get_logger().warning(
                "Cancellation for unknown subscription",
                extra={"subscription_id": update.subscription_id, "provider": provider},
            )
            return ServiceResult.failure("Subscription not found", error_code="SUBSCRIPTION_NOT_FOUND")

        plan_subscription = self.gateway.record_plan_cancellation(
            plan_subscription,
            immediate=update.canceled_immediately,
            period_end=update.period_end,
        )
        self.get_logger().info(
            "Subscription cancellation recorded",
            extra={
                "subscription_id": update.subscription_id,
                "immediate": update.canceled_immediately,
                "scheduled_for": update.period_end.isoformat() if update.period_end else None,
            },
        )
        return ServiceResult.success(plan_subscription)

    # =========================================================================
    # Reconciliation Sweep
    # =========================================================================

    def reconcile_stale_payments(self, older_than: datetime) -> ServiceResult[dict[str, int]]:
        """
        Verify every pending payment created before ``older_than``.

        Catches completions whose webhook never arrived. Returns counts of
        the resulting statuses plus ``errors`` for verification failures.
        """
        counts: dict[str, int] = {"checked": 0, "errors": 0}
        for order_id in self.gateway.get_stale_pending_payments(older_than).values_list("order_id", flat=True):
            counts["checked"] += 1
            result = self.verify_payment_status(order_id)
            if not result.success:
                counts["errors"] += 1
                continue
            status = str(result.data.status)
            counts[status] = counts.get(status, 0) + 1

        self.get_logger().info("Stale payment sweep finished", extra=counts)
        return ServiceResult.success(counts)


@functools.lru_cache(maxsize=1)
def get_payment_orchestrator() -> PaymentOrchestrator:
    """Process-wide orchestrator wired to the configured providers."""
    from payments.adapters.registry import get_provider_registry

    return PaymentOrchestrator(
        providers=get_provider_registry(),
        base_url=settings.APP_BASE_URL,
        default_currency=getattr(settings, "PAYMENT_DEFAULT_CURRENCY", "USD"),
    )
