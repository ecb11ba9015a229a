import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentIntent",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "order_id",
                    models.CharField(
                        help_text="Internal order id used as idempotency key",
                        max_length=64,
                        unique=True,
                    ),
                ),
                (
                    "provider",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("cryptomus", "Cryptomus")],
                        help_text="Payment processor handling this payment",
                        max_length=20,
                    ),
                ),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Amount in major currency units",
                        max_digits=12,
                    ),
                ),
                (
                    "currency",
                    models.CharField(default="USD", help_text="ISO 4217 currency code", max_length=3),
                ),
                (
                    "payment_type",
                    models.CharField(
                        choices=[
                            ("wallet_deposit", "Wallet deposit"),
                            ("proxy_purchase", "Proxy purchase"),
                        ],
                        help_text="What this payment is for",
                        max_length=20,
                    ),
                ),
                (
                    "is_recurring",
                    models.BooleanField(
                        default=False,
                        help_text="Whether a recurring subscription was requested",
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("canceled", "Canceled"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current payment status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "checkout_url",
                    models.URLField(
                        blank=True,
                        default="",
                        help_text="Hosted checkout URL returned by the provider",
                        max_length=2048,
                    ),
                ),
                (
                    "provider_payment_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Provider payment id (Stripe session id, Cryptomus uuid)",
                        max_length=255,
                    ),
                ),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Secondary provider reference",
                        max_length=255,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(default=1, help_text="Incremented on each save"),
                ),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "metadata",
                    models.JSONField(blank=True, default=dict, help_text="Plan details and provider ids"),
                ),
                (
                    "error",
                    models.TextField(blank=True, default="", help_text="Reason the payment failed"),
                ),
                (
                    "user",
                    models.ForeignKey(
                        help_text="User who owns this payment",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_intents",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Intent",
                "verbose_name_plural": "Payment Intents",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "status"], name="payint_user_status_idx"),
                    models.Index(fields=["user", "created_at"], name="payint_user_created_idx"),
                    models.Index(fields=["provider", "provider_payment_id"], name="payint_provider_ref_idx"),
                    models.Index(fields=["status", "created_at"], name="payint_status_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="payment_intent_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="TransactionRecord",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "transaction_type",
                    models.CharField(
                        choices=[("deposit", "Deposit"), ("purchase", "Purchase"), ("refund", "Refund")],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                (
                    "provider",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("cryptomus", "Cryptomus")],
                        max_length=20,
                    ),
                ),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "payment",
                    models.OneToOneField(
                        help_text="Completed payment this entry was derived from",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transaction",
                        to="payments.paymentintent",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Transaction Record",
                "verbose_name_plural": "Transaction Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="txrec_user_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProxyPlanSubscription",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                ("plan_type", models.CharField(max_length=32)),
                ("tier", models.CharField(max_length=32)),
                ("plan_name", models.CharField(max_length=100)),
                ("bandwidth", models.CharField(max_length=32)),
                ("is_recurring", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                ("purchased_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                (
                    "stripe_subscription_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Stripe Subscription ID (sub_xxx)",
                        max_length=255,
                    ),
                ),
                ("last_renewal_at", models.DateTimeField(blank=True, null=True)),
                ("next_renewal_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("scheduled_cancellation_at", models.DateTimeField(blank=True, null=True)),
                (
                    "last_payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="payments.paymentintent",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="proxy_plans",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Proxy Plan Subscription",
                "verbose_name_plural": "Proxy Plan Subscriptions",
                "ordering": ["-purchased_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("user", "plan_type"),
                        name="unique_proxy_plan_per_type",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "provider",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("cryptomus", "Cryptomus")],
                        max_length=20,
                    ),
                ),
                (
                    "event_id",
                    models.CharField(help_text="Provider event id, unique per provider", max_length=255),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Provider event type (e.g., 'checkout.session.completed')",
                        max_length=100,
                    ),
                ),
                ("payment_id", models.CharField(blank=True, default="", max_length=255)),
                (
                    "payment_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("canceled", "Canceled"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("subscription_update", models.JSONField(blank=True, null=True)),
                ("payload", models.JSONField(default=dict, help_text="Original webhook payload")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(default=0, help_text="Number of processing attempts"),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="webhook_status_created_idx"),
                    models.Index(fields=["status", "retry_count"], name="webhook_status_retry_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider", "event_id"),
                        name="unique_webhook_event_per_provider",
                    ),
                ],
            },
        ),
    ]
