"""
Webhook event handlers.

Events arrive here already verified and normalized by an adapter, so
handlers are keyed by what the event means for a payment (completed,
failed, ...) rather than by provider event names. Stripe and Cryptomus
share every handler.

The handler registry allows:
- Clean separation between event routing and handling
- Easy extension for new outcomes
- One place where unknown orders and regressions are acknowledged

Usage:
    from payments.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("completed")
    def handle_completed(orchestrator, event, provider) -> ServiceResult:
        ...

    result = dispatch_webhook(event, "stripe", orchestrator=orchestrator)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from core.services import ServiceResult

from payments.adapters.base import NormalizedWebhookEvent, SubscriptionUpdate
from payments.state_machines import PaymentStatus

if TYPE_CHECKING:
    from payments.services import PaymentOrchestrator


logger = logging.getLogger(__name__)

Handler = Callable[["PaymentOrchestrator", NormalizedWebhookEvent, str], ServiceResult]


# =============================================================================
# Handler Registry
# =============================================================================


# Maps outcome keys (payment status or "subscription.<kind>") to handlers
WEBHOOK_HANDLERS: dict[str, Handler] = {}


def register_handler(outcome: str) -> Callable[[Handler], Handler]:
    """
    Decorator to register a handler for an event outcome.

    Args:
        outcome: A PaymentStatus value or "subscription.renewal" /
            "subscription.cancellation"
    """

    def decorator(func: Handler) -> Handler:
        WEBHOOK_HANDLERS[outcome] = func
        return func

    return decorator


def outcome_for(event: NormalizedWebhookEvent) -> str:
    if event.subscription is not None:
        return f"subscription.{event.subscription.kind}"
    return str(event.status)


def dispatch_webhook(
    event: NormalizedWebhookEvent,
    provider: str,
    orchestrator: PaymentOrchestrator | None = None,
) -> ServiceResult:
    """
    Route a verified event to its handler.

    Events with no handler (pending status, informational types) are
    acknowledged with a successful no-op result.
    """
    if orchestrator is None:
        from payments.services import get_payment_orchestrator

        orchestrator = get_payment_orchestrator()

    outcome = outcome_for(event)
    handler = WEBHOOK_HANDLERS.get(outcome)

    if handler is None:
        logger.info(
            f"No action for {provider} event {event.type}",
            extra={"event_id": event.event_id, "outcome": outcome},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {provider} event {event.type} to {outcome} handler",
        extra={"event_id": event.event_id, "payment_id": event.payment_id},
    )
    return handler(orchestrator, event, provider)


def _unresolved(event: NormalizedWebhookEvent, provider: str) -> ServiceResult:
    # Acknowledged so the provider stops retrying an event we can never match
    logger.warning(
        f"{provider} event {event.type} does not match any payment",
        extra={
            "event_id": event.event_id,
            "payment_id": event.payment_id,
            "order_id": event.order_id,
        },
    )
    return ServiceResult.success(None)


def _provider_details(event: NormalizedWebhookEvent) -> dict[str, Any]:
    # raw_data is the Stripe object or the Cryptomus body
    raw = event.raw_data
    details = {
        "subscription_id": raw.get("subscription"),
        "payment_intent_id": raw.get("payment_intent"),
        "network": raw.get("network"),
        "payer_amount": raw.get("payer_amount"),
        "payer_currency": raw.get("payer_currency"),
    }
    return {key: value for key, value in details.items() if value}


def _failure_reason(event: NormalizedWebhookEvent) -> str:
    error = event.raw_data.get("last_payment_error") or {}
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return f"Payment {event.status} ({event.type})"


def _acknowledge_conflict(result: ServiceResult, event: NormalizedWebhookEvent) -> ServiceResult:
    # A late or out-of-order event must not be retried forever
    if not result.success and result.error_code == "RECONCILIATION_CONFLICT":
        logger.info(
            "Event conflicts with recorded payment status, acknowledged",
            extra={"event_id": event.event_id, "error": result.error},
        )
        return ServiceResult.success(None)
    return result


# =============================================================================
# Payment Outcome Handlers
# =============================================================================


@register_handler(PaymentStatus.COMPLETED)
def handle_payment_completed(
    orchestrator: PaymentOrchestrator,
    event: NormalizedWebhookEvent,
    provider: str,
) -> ServiceResult:
    payment = orchestrator.resolve_webhook_payment(event, provider)
    if payment is None:
        return _unresolved(event, provider)
    result = orchestrator.complete_payment(
        payment.order_id,
        source=f"{provider} webhook",
        provider_details=_provider_details(event),
    )
    return _acknowledge_conflict(result, event)


@register_handler(PaymentStatus.FAILED)
def handle_payment_failed(
    orchestrator: PaymentOrchestrator,
    event: NormalizedWebhookEvent,
    provider: str,
) -> ServiceResult:
    payment = orchestrator.resolve_webhook_payment(event, provider)
    if payment is None:
        return _unresolved(event, provider)
    return _acknowledge_conflict(orchestrator.fail_payment(payment.order_id, _failure_reason(event)), event)


@register_handler(PaymentStatus.CANCELED)
def handle_payment_canceled(
    orchestrator: PaymentOrchestrator,
    event: NormalizedWebhookEvent,
    provider: str,
) -> ServiceResult:
    payment = orchestrator.resolve_webhook_payment(event, provider)
    if payment is None:
        return _unresolved(event, provider)
    return _acknowledge_conflict(orchestrator.mark_canceled(payment.order_id), event)


@register_handler(PaymentStatus.REFUNDED)
def handle_payment_refunded(
    orchestrator: PaymentOrchestrator,
    event: NormalizedWebhookEvent,
    provider: str,
) -> ServiceResult:
    payment = orchestrator.resolve_webhook_payment(event, provider)
    if payment is None:
        return _unresolved(event, provider)
    return _acknowledge_conflict(orchestrator.mark_refunded(payment.order_id), event)


# =============================================================================
# Subscription Lifecycle Handlers
# =============================================================================


@register_handler(f"subscription.{SubscriptionUpdate.RENEWAL}")
def handle_subscription_renewal(
    orchestrator: PaymentOrchestrator,
    event: NormalizedWebhookEvent,
    provider: str,
) -> ServiceResult:
    result = orchestrator.process_subscription_renewal(event.subscription, provider)
    if not result.success and result.error_code == "SUBSCRIPTION_NOT_FOUND":
        return _unresolved(event, provider)
    return result


@register_handler(f"subscription.{SubscriptionUpdate.CANCELLATION}")
def handle_subscription_cancellation(
    orchestrator: PaymentOrchestrator,
    event: NormalizedWebhookEvent,
    provider: str,
) -> ServiceResult:
    result = orchestrator.process_subscription_cancellation(event.subscription, provider)
    if not result.success and result.error_code == "SUBSCRIPTION_NOT_FOUND":
        return _unresolved(event, provider)
    return result
