"""
Celery tasks for payment processing.

This module provides async tasks for:
- Processing verified webhook events from any provider
- Retrying failed webhook events
- Resetting webhook events stuck in processing
- Reconciling pending payments whose webhook never arrived

Usage:
    from payments.tasks import process_webhook_event

    # Queue a webhook for async processing
    process_webhook_event.delay(str(webhook_event.id))

    # Sweep stale pending payments (scheduled via celery-beat)
    from payments.tasks import reconcile_stale_payments
    reconcile_stale_payments.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from payments.exceptions import LockAcquisitionError
from payments.locks import DistributedLock
from payments.models import MAX_WEBHOOK_RETRIES, WebhookEvent
from payments.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STUCK_PROCESSING_THRESHOLD_MINUTES = 30
RETRY_BATCH_SIZE = 100
RECONCILE_LOCK_KEY = "payments:reconcile-stale"
RECONCILE_LOCK_TTL_SECONDS = 600


# =============================================================================
# Webhook Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Apply a stored webhook event.

    This task:
    1. Loads the WebhookEvent by ID
    2. Skips it if already processed
    3. Marks it processing and rebuilds the normalized event
    4. Routes it through the orchestrator
    5. Marks it processed or failed

    Unexpected exceptions mark the row failed and are re-raised so Celery
    retries with backoff. Completion is idempotent, so a retry never
    applies a side effect twice.
    """
    from payments.services import get_payment_orchestrator

    if isinstance(webhook_event_id, str):
        webhook_event_id = UUID(webhook_event_id)

    try:
        webhook_event = WebhookEvent.objects.get(id=webhook_event_id)
    except WebhookEvent.DoesNotExist:
        logger.error(
            "WebhookEvent not found",
            extra={"webhook_event_id": str(webhook_event_id)},
        )
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    if webhook_event.is_processed:
        logger.info(
            "WebhookEvent already processed, skipping",
            extra={"webhook_event_id": str(webhook_event_id), "event_id": webhook_event.event_id},
        )
        return {"status": "already_processed", "webhook_event_id": str(webhook_event_id)}

    webhook_event.mark_processing()
    webhook_event.save(update_fields=["status", "retry_count", "updated_at"])

    log_context = {
        "webhook_event_id": str(webhook_event_id),
        "provider": webhook_event.provider,
        "event_id": webhook_event.event_id,
        "event_type": webhook_event.event_type,
        "retry_count": webhook_event.retry_count,
    }
    logger.info(f"Dispatching webhook: {webhook_event.event_type}", extra=log_context)

    try:
        result = get_payment_orchestrator().apply_webhook_event(
            webhook_event.to_event(),
            webhook_event.provider,
        )
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        logger.exception("Webhook processing failed with exception", extra=log_context)
        raise

    if result.success:
        webhook_event.mark_processed()
        webhook_event.save(update_fields=["status", "processed_at", "error_message", "updated_at"])
        logger.info("Webhook processed successfully", extra=log_context)
        return {
            "status": "processed",
            "webhook_event_id": str(webhook_event_id),
            "event_id": webhook_event.event_id,
        }

    error_msg = result.error or "Handler returned failure"
    webhook_event.mark_failed(error_msg)
    webhook_event.save(update_fields=["status", "error_message", "updated_at"])
    logger.warning(
        f"Webhook handler failed: {error_msg}",
        extra={**log_context, "error_code": result.error_code},
    )
    return {
        "status": "handler_failed",
        "webhook_event_id": str(webhook_event_id),
        "error": error_msg,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Re-queue failed (and never-queued pending) webhook events.

    Pending rows older than the stuck threshold are included because the
    webhook view still answers 200 when enqueueing fails.
    """
    stale_pending = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)
    candidates = (
        WebhookEvent.objects.filter(retry_count__lt=MAX_WEBHOOK_RETRIES)
        .filter(
            status__in=[WebhookEventStatus.FAILED, WebhookEventStatus.PENDING],
        )
        .exclude(status=WebhookEventStatus.PENDING, created_at__gte=stale_pending)
        .order_by("created_at")[:RETRY_BATCH_SIZE]
    )

    queued_count = 0
    for webhook in candidates:
        try:
            process_webhook_event.delay(str(webhook.id))
        except Exception as e:
            logger.error(
                f"Failed to queue webhook for retry: {e}",
                extra={"webhook_event_id": str(webhook.id)},
            )
            continue
        queued_count += 1
        logger.info(
            "Queued webhook for retry",
            extra={
                "webhook_event_id": str(webhook.id),
                "event_id": webhook.event_id,
                "retry_count": webhook.retry_count,
            },
        )

    logger.info(
        f"Queued {queued_count} webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """
    Reset webhooks stuck in PROCESSING to FAILED so they can be retried.

    Handles workers that crashed mid-processing.
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)
    stuck_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook in stuck_webhooks:
        stuck_since = webhook.updated_at
        webhook.mark_failed("Processing timed out - reset for retry")
        webhook.save(update_fields=["status", "error_message", "updated_at"])
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={
                "webhook_event_id": str(webhook.id),
                "event_id": webhook.event_id,
                "stuck_since": stuck_since.isoformat(),
            },
        )

    if reset_count > 0:
        logger.info(f"Reset {reset_count} stuck webhooks", extra={"reset_count": reset_count})

    return {"reset_count": reset_count}


# =============================================================================
# Reconciliation
# =============================================================================


@shared_task
def reconcile_stale_payments() -> dict:
    """
    Verify pending payments older than PAYMENT_RECONCILE_AFTER_MINUTES.

    Only one sweep runs at a time; an overlapping run exits immediately.
    """
    from payments.services import get_payment_orchestrator

    minutes = getattr(settings, "PAYMENT_RECONCILE_AFTER_MINUTES", 15)
    cutoff = timezone.now() - timedelta(minutes=minutes)

    try:
        with DistributedLock(RECONCILE_LOCK_KEY, ttl=RECONCILE_LOCK_TTL_SECONDS, blocking=False):
            result = get_payment_orchestrator().reconcile_stale_payments(cutoff)
    except LockAcquisitionError:
        logger.info("Stale payment sweep already running, skipping")
        return {"status": "skipped"}

    return {"status": "completed", **result.data}
