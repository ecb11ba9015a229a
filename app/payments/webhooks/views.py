"""
Webhook endpoint views for Stripe and Cryptomus.

Each view:
1. Verifies the webhook signature through the provider's adapter
2. Creates/retrieves the WebhookEvent record (idempotent)
3. Queues the event for async processing
4. Returns immediately

Nothing is written for a delivery whose signature does not verify.

Usage:
    # In urls.py
    from payments.webhooks.views import cryptomus_webhook, stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
        path("webhooks/cryptomus/", cryptomus_webhook, name="cryptomus_webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from payments.adapters import get_provider_registry
from payments.exceptions import SignatureError
from payments.models import WebhookEvent
from payments.state_machines import PaymentProviderId, WebhookEventStatus


logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive Stripe webhook events.

    Stripe expects a 2xx response within 20 seconds, so business logic
    runs in the background task.

    Example Stripe-Signature header:
        t=1614556800,v1=xxx,v0=yyy
    """
    return receive_webhook(
        request,
        PaymentProviderId.STRIPE,
        request.headers.get("Stripe-Signature"),
    )


@csrf_exempt
@require_POST
def cryptomus_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive Cryptomus payment callbacks.

    The signature travels in the ``sign`` header or, more commonly, as a
    ``sign`` field in the JSON body; the adapter handles both.
    """
    return receive_webhook(
        request,
        PaymentProviderId.CRYPTOMUS,
        request.headers.get("sign"),
    )


def receive_webhook(request: HttpRequest, provider: str, signature: str | None) -> HttpResponse:
    """
    Shared verify-store-queue flow.

    Returns:
        HttpResponse with status:
        - 200: Event accepted (new or duplicate)
        - 400: Invalid signature or payload
        - 503: Provider not configured
    """
    adapter = get_provider_registry().get(provider)
    if adapter is None:
        logger.error(f"Webhook received for unconfigured provider {provider}")
        return HttpResponse("Provider not configured", status=503)

    # Step 1: Verify signature
    try:
        event = adapter.handle_webhook(request.body, signature)
    except SignatureError as e:
        logger.warning(
            f"{provider} webhook signature verification failed",
            extra={"error": e.message},
        )
        return HttpResponse("Invalid signature", status=400)

    if not event.event_id:
        logger.warning(f"{provider} webhook missing event id")
        return HttpResponse("Invalid event", status=400)

    logger.info(
        f"Received {provider} webhook: {event.type}",
        extra={"event_id": event.event_id, "event_type": event.type},
    )

    # Step 2: Create/get WebhookEvent (idempotent)
    webhook_event, created = WebhookEvent.objects.get_or_create(
        provider=provider,
        event_id=event.event_id,
        defaults=WebhookEvent.fields_from_event(event),
    )

    # Step 3: If already processed, return success
    if not created:
        if webhook_event.status == WebhookEventStatus.PROCESSED:
            logger.info(
                "Webhook already processed, returning success",
                extra={"event_id": event.event_id, "provider": provider},
            )
            return HttpResponse("Already processed", status=200)

        logger.info(
            f"Webhook already exists with status: {webhook_event.status}",
            extra={"event_id": event.event_id, "provider": provider},
        )

    # Step 4: Queue for async processing
    try:
        from payments.tasks import process_webhook_event

        process_webhook_event.delay(str(webhook_event.id))
        logger.info(
            "Webhook queued for processing",
            extra={"event_id": event.event_id, "webhook_event_id": str(webhook_event.id)},
        )
    except Exception as e:
        # The retry_failed_webhooks task picks up pending rows
        logger.error(
            f"Failed to queue webhook: {type(e).__name__}",
            extra={"event_id": event.event_id},
            exc_info=True,
        )

    return HttpResponse("Accepted", status=200)
