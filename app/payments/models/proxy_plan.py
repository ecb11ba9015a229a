"""
ProxyPlanSubscription: the plan a user currently holds per proxy type.

One row per (user, plan_type). Buying a plan of a type the user already
has replaces the tier and terms on the existing row, which is how an
upgrade or a repurchase extends access.

Recurring plans have ``expires_at`` unset and are kept alive by renewal
events that push ``next_renewal_at`` forward. One-time plans carry an
``expires_at`` computed from the catalog.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.models import BaseModel, UUIDPrimaryKeyMixin


class ProxyPlanSubscription(UUIDPrimaryKeyMixin, BaseModel):
    """
    Active or historical proxy plan for a user.

    Fields:
        user/plan_type: Unique together
        tier/plan_name/bandwidth: Copied from the catalog at purchase time
        is_recurring: Billed as a provider subscription
        is_active: Whether the plan currently grants access
        purchased_at/expires_at: Purchase time and fixed expiry (one-time plans)
        last_payment: PaymentIntent that last activated or renewed the plan
        stripe_subscription_id: Stripe sub_xxx for lifecycle events
        last_renewal_at/next_renewal_at: Renewal bookkeeping
        canceled_at: When the plan was deactivated
        cancel_at_period_end/scheduled_cancellation_at: Deferred cancellation
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="proxy_plans",
    )

    plan_type = models.CharField(max_length=32)
    tier = models.CharField(max_length=32)
    plan_name = models.CharField(max_length=100)
    bandwidth = models.CharField(max_length=32)

    is_recurring = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True, db_index=True)

    purchased_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(null=True, blank=True)

    last_payment = models.ForeignKey(
        "payments.PaymentIntent",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    # ==========================================================================
    # Subscription Lifecycle
    # ==========================================================================

    stripe_subscription_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Stripe Subscription ID (sub_xxx)",
    )

    last_renewal_at = models.DateTimeField(null=True, blank=True)
    next_renewal_at = models.DateTimeField(null=True, blank=True)

    canceled_at = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    scheduled_cancellation_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-purchased_at"]
        verbose_name = "Proxy Plan Subscription"
        verbose_name_plural = "Proxy Plan Subscriptions"
        constraints = [
            models.UniqueConstraint(
                fields=["user", "plan_type"],
                name="unique_proxy_plan_per_type",
            ),
        ]

    def __str__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"ProxyPlanSubscription({self.user_id}, {self.plan_name}, {state})"

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= timezone.now()
