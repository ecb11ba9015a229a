"""
WebhookEvent model for provider webhook tracking.

Every verified webhook is stored before any processing so that:
1. Duplicate deliveries are detected (provider + event_id is unique)
2. Failed processing can be retried by a periodic task
3. The original payload is kept for forensic replay

Usage:
    from payments.models import WebhookEvent

    event, created = WebhookEvent.objects.get_or_create(
        provider="stripe",
        event_id="evt_1234567890",
        defaults={"event_type": "checkout.session.completed", "payload": data},
    )

    if not created and event.is_processed:
        return HttpResponse(status=200)
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel, UUIDPrimaryKeyMixin

from payments.adapters.base import NormalizedWebhookEvent, SubscriptionUpdate
from payments.state_machines import PaymentProviderId, PaymentStatus, WebhookEventStatus

MAX_WEBHOOK_RETRIES = 5


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A verified, normalized webhook delivery.

    Processing Flow:
        1. Webhook arrives, adapter verifies the signature
        2. get_or_create on (provider, event_id)
        3. If PROCESSED -> 200 (duplicate)
        4. Celery task marks PROCESSING, routes to a handler
        5. PROCESSED on success, FAILED with error_message otherwise
        6. FAILED events are retried until MAX_WEBHOOK_RETRIES

    Fields:
        provider: Which adapter verified the event
        event_id: Provider-unique id (Stripe evt_xxx, Cryptomus uuid:status)
        event_type: Provider event name
        payment_id: Provider payment reference from the normalized event
        payment_status: PaymentStatus implied by the event
        metadata: Normalized metadata (order_id, ...)
        subscription_update: Serialized SubscriptionUpdate, if any
        payload: Original provider payload
        status: Processing status
        processed_at/error_message/retry_count: Processing bookkeeping
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    provider = models.CharField(
        max_length=20,
        choices=PaymentProviderId.choices,
    )

    event_id = models.CharField(
        max_length=255,
        help_text="Provider event id, unique per provider",
    )

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Provider event type (e.g., 'checkout.session.completed')",
    )

    # ==========================================================================
    # Normalized Event
    # ==========================================================================

    payment_id = models.CharField(max_length=255, blank=True, default="")

    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )

    metadata = models.JSONField(default=dict, blank=True)

    subscription_update = models.JSONField(null=True, blank=True)

    payload = models.JSONField(
        default=dict,
        help_text="Original webhook payload",
    )

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "event_id"],
                name="unique_webhook_event_per_provider",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "created_at"], name="webhook_status_created_idx"),
            models.Index(fields=["status", "retry_count"], name="webhook_status_retry_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.provider}:{self.event_id}, {self.event_type})"

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def is_failed(self) -> bool:
        return self.status == WebhookEventStatus.FAILED

    @property
    def can_retry(self) -> bool:
        return self.is_failed and self.retry_count < MAX_WEBHOOK_RETRIES

    @property
    def order_id(self) -> str | None:
        return (self.metadata or {}).get("order_id") or None

    # ==========================================================================
    # Helper Methods (caller saves)
    # ==========================================================================

    def mark_processing(self) -> None:
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message

    # ==========================================================================
    # Normalized Event Conversion
    # ==========================================================================

    @classmethod
    def fields_from_event(cls, event: NormalizedWebhookEvent) -> dict:
        """Column values for storing a verified NormalizedWebhookEvent."""
        return {
            "event_type": event.type,
            "payment_id": event.payment_id or "",
            "payment_status": event.status,
            "metadata": event.metadata,
            "subscription_update": event.subscription.to_dict() if event.subscription else None,
            "payload": event.raw_data,
        }

    def to_event(self) -> NormalizedWebhookEvent:
        """Rebuild the NormalizedWebhookEvent this row was stored from."""
        return NormalizedWebhookEvent(
            event_id=self.event_id,
            type=self.event_type,
            payment_id=self.payment_id,
            status=self.payment_status,
            metadata=self.metadata or {},
            raw_data=self.payload or {},
            subscription=(
                SubscriptionUpdate.from_dict(self.subscription_update) if self.subscription_update else None
            ),
        )
