"""
Payment admin configuration.

Status changes go through the service layer, so every status and money
field is read-only here. Transaction records cannot be edited at all.
"""

from django.contrib import admin

from payments.models import PaymentIntent, ProxyPlanSubscription, TransactionRecord, WebhookEvent

__all__ = [
    "PaymentIntentAdmin",
    "ProxyPlanSubscriptionAdmin",
    "TransactionRecordAdmin",
    "WebhookEventAdmin",
]


@admin.register(PaymentIntent)
class PaymentIntentAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentIntent.

    Provides visibility into payment attempts across providers.
    """

    list_display = [
        "order_id",
        "user",
        "provider",
        "amount_display",
        "payment_type",
        "status",
        "created_at",
    ]
    list_filter = ["status", "provider", "payment_type", "is_recurring", "created_at"]
    search_fields = ["order_id", "provider_payment_id", "provider_reference", "user__email"]
    readonly_fields = [
        "id",
        "order_id",
        "user",
        "provider",
        "amount",
        "currency",
        "payment_type",
        "is_recurring",
        "status",
        "checkout_url",
        "provider_payment_id",
        "provider_reference",
        "version",
        "completed_at",
        "failed_at",
        "canceled_at",
        "refunded_at",
        "error",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "order_id", "user", "status")}),
        ("Amount", {"fields": ("amount", "currency", "payment_type", "is_recurring")}),
        (
            "Provider",
            {"fields": ("provider", "provider_payment_id", "provider_reference", "checkout_url")},
        ),
        (
            "State Timestamps",
            {
                "fields": ("completed_at", "failed_at", "canceled_at", "refunded_at"),
                "classes": ("collapse",),
            },
        ),
        ("Failure Info", {"fields": ("error",), "classes": ("collapse",)}),
        ("Metadata", {"fields": ("metadata", "version"), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: PaymentIntent) -> str:
        return f"{obj.amount:.2f} {obj.currency}"

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for payments (audit trail)."""
        return False


@admin.register(TransactionRecord)
class TransactionRecordAdmin(admin.ModelAdmin):
    list_display = ["id", "user", "transaction_type", "amount", "currency", "provider", "created_at"]
    list_filter = ["transaction_type", "provider", "created_at"]
    search_fields = ["id", "payment__order_id", "user__email", "description"]
    readonly_fields = [
        "id",
        "payment",
        "user",
        "transaction_type",
        "amount",
        "currency",
        "provider",
        "description",
        "metadata",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(ProxyPlanSubscription)
class ProxyPlanSubscriptionAdmin(admin.ModelAdmin):
    list_display = ["user", "plan_type", "tier", "is_active", "is_recurring", "expires_at", "next_renewal_at"]
    list_filter = ["plan_type", "tier", "is_active", "is_recurring", "cancel_at_period_end"]
    search_fields = ["user__email", "stripe_subscription_id"]
    readonly_fields = ["id", "last_payment", "stripe_subscription_id", "created_at", "updated_at"]
    ordering = ["-purchased_at"]


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for WebhookEvent.

    Provides visibility into webhook processing status. Status and
    error_message stay editable so an operator can requeue an event.
    """

    list_display = [
        "id",
        "provider",
        "event_id",
        "event_type",
        "payment_status",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["provider", "status", "event_type", "created_at"]
    search_fields = ["id", "event_id", "payment_id", "event_type"]
    readonly_fields = [
        "id",
        "provider",
        "event_id",
        "event_type",
        "payment_id",
        "payment_status",
        "metadata",
        "subscription_update",
        "payload",
        "processed_at",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "provider", "event_id", "event_type", "status")}),
        ("Normalized", {"fields": ("payment_id", "payment_status", "metadata", "subscription_update")}),
        ("Processing", {"fields": ("processed_at", "retry_count")}),
        ("Error Info", {"fields": ("error_message",), "classes": ("collapse",)}),
        ("Payload", {"fields": ("payload",), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for webhook events (audit trail)."""
        return False

    def has_add_permission(self, request) -> bool:
        return False
