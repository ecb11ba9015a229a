"""
Stripe adapter built on Checkout Sessions.

One-time payments and subscriptions both redirect the customer to a
hosted Checkout Session. The session id is the ``payment_id`` the rest of
the system stores and later verifies.

Features:
- Explicit ``api_key`` on every SDK call, so two adapters built from
  different settings never share credentials
- HTTP timeout and network retries configured once at construction
- Stripe SDK errors translated into ProviderError and returned as
  ``success=False`` responses
- Structured logging with timing metrics
- Webhook verification through ``stripe.Webhook.construct_event``

Configuration (via settings, read by the provider registry):
- STRIPE_SECRET_KEY: Stripe API secret key (required)
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK network retries (default: 3)

Usage:
    adapter = StripeAdapter(api_key="sk_test_...", webhook_secret="whsec_...")
    response = adapter.create_one_time_payment(user, metadata, success_url, cancel_url)
    if response.success:
        redirect(response.redirect_url)
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import stripe

from payments.adapters.base import (
    CancelPaymentResponse,
    CreatePaymentResponse,
    NormalizedWebhookEvent,
    PaymentMetadata,
    PaymentProvider,
    RecurringPaymentMetadata,
    RefundPaymentResponse,
    SubscriptionUpdate,
    VerifyPaymentResponse,
    from_minor_units,
    to_minor_units,
)
from payments.exceptions import ProviderConfigurationError, ProviderError, SignatureError
from payments.state_machines import PaymentProviderId, PaymentStatus

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Status Mapping
# =============================================================================

SESSION_STATUS_MAP = {
    "complete": PaymentStatus.COMPLETED,
    "expired": PaymentStatus.CANCELED,
}

# event type -> (status, where the payment id lives on data.object)
PAYMENT_EVENT_MAP = {
    "checkout.session.completed": (PaymentStatus.COMPLETED, "id"),
    "checkout.session.expired": (PaymentStatus.CANCELED, "id"),
    "payment_intent.succeeded": (PaymentStatus.COMPLETED, "id"),
    "payment_intent.payment_failed": (PaymentStatus.FAILED, "id"),
    "charge.refunded": (PaymentStatus.REFUNDED, "payment_intent"),
}

RENEWAL_BILLING_REASON = "subscription_cycle"


def _timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter(PaymentProvider):
    """
    Payment provider backed by Stripe Checkout.

    Thread-safe; holds only immutable configuration.
    """

    provider_id = PaymentProviderId.STRIPE
    display_name = "Stripe"
    supports_cancellation = True
    supports_refunds = True

    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        timeout_seconds: int = 10,
        max_retries: int = 3,
    ):
        if not api_key:
            raise ProviderConfigurationError(
                "Stripe API key is required",
                details={"provider": self.provider_id},
            )

        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        stripe.max_network_retries = max_retries

    # =========================================================================
    # Payment Creation
    # =========================================================================

    def create_one_time_payment(
        self,
        user: Any,
        metadata: PaymentMetadata,
        success_url: str,
        cancel_url: str,
    ) -> CreatePaymentResponse:
        provider_metadata = metadata.provider_metadata(self.provider_id)
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": metadata.currency.lower(),
                        "product_data": {
                            "name": metadata.description or f"Order {metadata.order_id}",
                        },
                        "unit_amount": to_minor_units(metadata.amount),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": metadata.order_id,
            "metadata": provider_metadata,
            "payment_intent_data": {"metadata": provider_metadata},
        }
        if metadata.customer_email:
            params["customer_email"] = metadata.customer_email

        try:
            session = self._call(
                "create_checkout_session",
                lambda: stripe.checkout.Session.create(api_key=self.api_key, **params),
                order_id=metadata.order_id,
                mode="payment",
            )
        except ProviderError as e:
            return CreatePaymentResponse(success=False, error=e.message)

        return CreatePaymentResponse(
            success=True,
            redirect_url=session.url,
            payment_id=session.id,
            provider_reference=session.id,
        )

    def create_recurring_payment(
        self,
        user: Any,
        metadata: RecurringPaymentMetadata,
        success_url: str,
        cancel_url: str,
    ) -> CreatePaymentResponse:
        provider_metadata = metadata.provider_metadata(self.provider_id)

        subscription_data: dict[str, Any] = {"metadata": provider_metadata}
        if metadata.trial_period_days:
            subscription_data["trial_period_days"] = metadata.trial_period_days

        try:
            price = self._call(
                "create_price",
                lambda: stripe.Price.create(
                    api_key=self.api_key,
                    unit_amount=to_minor_units(metadata.amount),
                    currency=metadata.currency.lower(),
                    recurring={
                        "interval": str(metadata.interval),
                        "interval_count": metadata.interval_count,
                    },
                    product_data={
                        "name": metadata.description or f"Subscription {metadata.order_id}",
                    },
                ),
                order_id=metadata.order_id,
            )

            params: dict[str, Any] = {
                "mode": "subscription",
                "payment_method_types": ["card"],
                "line_items": [{"price": price.id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": metadata.order_id,
                "metadata": provider_metadata,
                "subscription_data": subscription_data,
            }
            if metadata.customer_email:
                params["customer_email"] = metadata.customer_email

            session = self._call(
                "create_checkout_session",
                lambda: stripe.checkout.Session.create(api_key=self.api_key, **params),
                order_id=metadata.order_id,
                mode="subscription",
            )
        except ProviderError as e:
            return CreatePaymentResponse(success=False, error=e.message)

        return CreatePaymentResponse(
            success=True,
            redirect_url=session.url,
            payment_id=session.id,
            provider_reference=session.id,
        )

    # =========================================================================
    # Verification / Cancellation / Refunds
    # =========================================================================

    def verify_payment(self, payment_id: str) -> VerifyPaymentResponse:
        try:
            session = self._retrieve_session(payment_id)
        except ProviderError as e:
            return VerifyPaymentResponse(success=False, status=PaymentStatus.FAILED, error=e.message)

        metadata = dict(session.metadata or {})
        metadata["subscription_id"] = session.subscription
        metadata["payment_intent_id"] = session.payment_intent

        return VerifyPaymentResponse(
            success=True,
            status=SESSION_STATUS_MAP.get(session.status, PaymentStatus.PENDING),
            amount=from_minor_units(session.amount_total) if session.amount_total else None,
            currency=session.currency.upper() if session.currency else None,
            metadata=metadata,
        )

    def cancel_payment(self, payment_id: str) -> CancelPaymentResponse:
        """
        Cancel whatever the session has turned into.

        An open session is expired. A completed subscription session cancels
        the subscription; otherwise the underlying PaymentIntent is canceled.
        """
        try:
            session = self._retrieve_session(payment_id)

            if session.status == "open":
                self._call(
                    "expire_checkout_session",
                    lambda: stripe.checkout.Session.expire(payment_id, api_key=self.api_key),
                    payment_id=payment_id,
                )
            elif session.subscription:
                self._call(
                    "cancel_subscription",
                    lambda: stripe.Subscription.cancel(session.subscription, api_key=self.api_key),
                    payment_id=payment_id,
                )
            elif session.payment_intent:
                self._call(
                    "cancel_payment_intent",
                    lambda: stripe.PaymentIntent.cancel(session.payment_intent, api_key=self.api_key),
                    payment_id=payment_id,
                )
        except ProviderError as e:
            return CancelPaymentResponse(success=False, error=e.message)

        return CancelPaymentResponse(success=True)

    def refund_payment(self, payment_id: str, amount: Decimal | None = None) -> RefundPaymentResponse:
        try:
            session = self._retrieve_session(payment_id)
            if not session.payment_intent:
                return RefundPaymentResponse(
                    success=False,
                    error="No payment intent found for this session",
                )

            params: dict[str, Any] = {"payment_intent": session.payment_intent}
            if amount:
                params["amount"] = to_minor_units(amount)

            refund = self._call(
                "create_refund",
                lambda: stripe.Refund.create(api_key=self.api_key, **params),
                payment_id=payment_id,
            )
        except ProviderError as e:
            return RefundPaymentResponse(success=False, error=e.message)

        return RefundPaymentResponse(success=True, refund_id=refund.id)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def handle_webhook(self, payload: bytes, signature: str | None) -> NormalizedWebhookEvent:
        """
        Verify a Stripe webhook and normalize it.

        Raises:
            SignatureError: Missing secret/signature or failed verification
        """
        logger = self.get_logger()

        if not self.webhook_secret or not signature:
            logger.warning("Stripe webhook rejected: secret or signature missing")
            raise SignatureError("Webhook secret and signature are required")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("Stripe webhook signature verification failed", extra={"error": str(e)})
            raise SignatureError("Invalid signature") from e

        event = json.loads(payload)
        event_type = event.get("type", "")
        obj = event.get("data", {}).get("object", {}) or {}

        normalized = NormalizedWebhookEvent(
            event_id=event.get("id", ""),
            type=event_type,
            payment_id="",
            status=PaymentStatus.PENDING,
            metadata=dict(obj.get("metadata") or {}),
            raw_data=obj,
        )

        if event_type in PAYMENT_EVENT_MAP:
            status, id_field = PAYMENT_EVENT_MAP[event_type]
            normalized.status = status
            normalized.payment_id = obj.get(id_field) or ""
            if event_type == "charge.refunded" and not obj.get("refunded", True):
                # partial refund, the payment stays completed
                normalized.status = PaymentStatus.COMPLETED
        elif event_type == "invoice.paid":
            self._apply_invoice(normalized, obj)
        elif event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            self._apply_subscription_change(normalized, obj, deleted=event_type.endswith("deleted"))

        logger.info(
            "Stripe webhook verified",
            extra={
                "event_id": normalized.event_id,
                "event_type": event_type,
                "status": str(normalized.status),
                "payment_id": normalized.payment_id,
            },
        )
        return normalized

    def _apply_invoice(self, normalized: NormalizedWebhookEvent, invoice: dict[str, Any]) -> None:
        """Only cycle invoices are renewals; the first invoice completes the checkout."""
        if invoice.get("billing_reason") != RENEWAL_BILLING_REASON:
            return

        parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
        legacy_details = invoice.get("subscription_details") or {}
        subscription_id = invoice.get("subscription") or parent_details.get("subscription")
        if not subscription_id:
            return

        metadata = dict(parent_details.get("metadata") or legacy_details.get("metadata") or {})
        lines = (invoice.get("lines") or {}).get("data") or []
        period_end = lines[0].get("period", {}).get("end") if lines else None

        normalized.payment_id = invoice.get("id", "")
        normalized.status = PaymentStatus.COMPLETED
        normalized.metadata = {**metadata, **normalized.metadata}
        normalized.subscription = SubscriptionUpdate(
            subscription_id=subscription_id,
            kind=SubscriptionUpdate.RENEWAL,
            amount=from_minor_units(invoice.get("amount_paid") or 0),
            currency=(invoice.get("currency") or "").upper() or None,
            period_end=_timestamp(period_end or invoice.get("period_end")),
            invoice_id=invoice.get("id"),
            metadata=metadata,
        )

    def _apply_subscription_change(
        self,
        normalized: NormalizedWebhookEvent,
        subscription: dict[str, Any],
        deleted: bool,
    ) -> None:
        canceled_immediately = deleted or subscription.get("status") == "canceled"
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        if not (canceled_immediately or cancel_at_period_end):
            return

        items = (subscription.get("items") or {}).get("data") or []
        period_end = subscription.get("current_period_end") or (
            items[0].get("current_period_end") if items else None
        )

        normalized.payment_id = subscription.get("id", "")
        normalized.status = PaymentStatus.CANCELED
        normalized.subscription = SubscriptionUpdate(
            subscription_id=subscription.get("id", ""),
            kind=SubscriptionUpdate.CANCELLATION,
            period_end=_timestamp(period_end),
            canceled_immediately=canceled_immediately,
            cancel_at_period_end=cancel_at_period_end and not canceled_immediately,
            metadata=dict(subscription.get("metadata") or {}),
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _retrieve_session(self, session_id: str):
        return self._call(
            "retrieve_checkout_session",
            lambda: stripe.checkout.Session.retrieve(session_id, api_key=self.api_key),
            payment_id=session_id,
        )

    def _call(self, operation: str, func: Callable[[], Any], **context: Any) -> Any:
        """
        Run one SDK call with timing logs.

        Raises:
            ProviderError: Translated from any stripe.StripeError
        """
        logger = self.get_logger()
        log_context = {"operation": operation, "provider": self.provider_id, **context}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            result = func()
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            raise self._translate_error(e, log_context, duration_ms) from e

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return result

    def _translate_error(
        self,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> ProviderError:
        """Map a Stripe SDK exception to ProviderError, logging at a matching level."""
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms, "stripe_code": error.code}
        message = error.user_message or str(error)
        status_code = error.http_status

        if isinstance(error, stripe.CardError):
            logger.warning("Card error from Stripe", extra=log_context)
            return ProviderError(message, self.provider_id, status_code, error_code="CARD_DECLINED")

        if isinstance(error, stripe.InvalidRequestError):
            logger.error("Invalid request to Stripe", extra=log_context)
            return ProviderError(message, self.provider_id, status_code, error_code="INVALID_REQUEST")

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            return ProviderError(
                "Stripe rate limit exceeded. Please retry.",
                self.provider_id,
                status_code,
                error_code="RATE_LIMITED",
            )

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            return ProviderError("Stripe authentication failed", self.provider_id, status_code)

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            return ProviderError(
                "Could not connect to Stripe. Please retry.",
                self.provider_id,
                error_code="PROVIDER_UNAVAILABLE",
            )

        logger.error(
            f"Stripe API error: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        return ProviderError(message, self.provider_id, status_code)


__all__ = ["StripeAdapter"]
