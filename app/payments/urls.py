"""
URL configuration for the payments app.

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("payments/", include("payments.urls")),
    ]
"""

from django.urls import path

from payments import views
from payments.webhooks.views import cryptomus_webhook, stripe_webhook

app_name = "payments"

urlpatterns = [
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
    path("webhooks/cryptomus/", cryptomus_webhook, name="cryptomus_webhook"),
    # Catalog and account
    path("plans/", views.PlanCatalogView.as_view(), name="plan_catalog"),
    path("plans/active/", views.ActivePlansView.as_view(), name="active_plans"),
    path("wallet/", views.WalletView.as_view(), name="wallet"),
    # Checkout
    path("purchase/", views.PurchaseView.as_view(), name="purchase"),
    path("deposit/", views.DepositView.as_view(), name="deposit"),
    # Payments
    path("", views.PaymentListView.as_view(), name="payment_list"),
    path("<str:order_id>/", views.PaymentDetailView.as_view(), name="payment_detail"),
    path("<str:order_id>/verify/", views.VerifyPaymentView.as_view(), name="payment_verify"),
    path("<str:order_id>/cancel/", views.CancelPaymentView.as_view(), name="payment_cancel"),
]
