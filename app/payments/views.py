"""
DRF views for payments app.

Endpoints:
    GET  /api/v1/payments/plans/ - Proxy plan catalog (public)
    GET  /api/v1/payments/plans/active/ - Current user's plans
    POST /api/v1/payments/purchase/ - Start a proxy plan purchase
    POST /api/v1/payments/deposit/ - Start a wallet deposit
    GET  /api/v1/payments/ - Current user's payments
    GET  /api/v1/payments/wallet/ - Wallet balance and transactions
    GET  /api/v1/payments/{order_id}/ - Payment detail
    POST /api/v1/payments/{order_id}/verify/ - Reconcile with the provider
    POST /api/v1/payments/{order_id}/cancel/ - Cancel a pending payment

Webhook endpoints live in payments.webhooks.views.

Security:
    - Everything except the plan catalog requires authentication
    - Payments are always looked up scoped to request.user
"""

from __future__ import annotations

from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema

from core.services import ServiceResult

from payments.exceptions import PaymentNotFoundError
from payments.plans import iter_plans
from payments.serializers import (
    DepositRequestSerializer,
    PaymentInitiationSerializer,
    PaymentIntentSerializer,
    ProxyPlanSerializer,
    ProxyPlanSubscriptionSerializer,
    PurchaseRequestSerializer,
    WalletSerializer,
)
from payments.services import PaymentGateway, get_payment_orchestrator

# ServiceResult error codes that are not client input errors
ERROR_STATUS = {
    "PAYMENT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PROVIDER_ERROR": status.HTTP_502_BAD_GATEWAY,
    "RECONCILIATION_CONFLICT": status.HTTP_409_CONFLICT,
}

TAGS = ["Payments"]


def error_response(result: ServiceResult) -> Response:
    """Render a failed ServiceResult; unknown codes are treated as 400."""
    return Response(
        result.to_response(),
        status=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
    )


class PlanCatalogView(APIView):
    permission_classes = [AllowAny]

    @extend_schema(
        operation_id="list_proxy_plans",
        summary="List proxy plans",
        responses={200: ProxyPlanSerializer(many=True)},
        tags=TAGS,
    )
    def get(self, request):
        return Response(ProxyPlanSerializer(list(iter_plans()), many=True).data)


class ActivePlansView(APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="list_my_proxy_plans",
        summary="List my proxy plans",
        responses={200: ProxyPlanSubscriptionSerializer(many=True)},
        tags=TAGS,
    )
    def get(self, request):
        plans = PaymentGateway.get_user_plans(request.user)
        return Response(ProxyPlanSubscriptionSerializer(plans, many=True).data)


class PurchaseView(APIView):
    """
    Start a proxy plan purchase.

    POST /api/v1/payments/purchase/

    Request body:
        {"plan_type": "residential", "tier": "pro", "provider": "stripe"}

    Returns:
        {"order_id": "order_...", "redirect_url": "https://checkout.stripe.com/..."}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="purchase_proxy_plan",
        summary="Purchase a proxy plan",
        request=PurchaseRequestSerializer,
        responses={
            201: PaymentInitiationSerializer,
            400: OpenApiResponse(description="Invalid plan, provider or billing option"),
            502: OpenApiResponse(description="Payment provider rejected the checkout"),
        },
        tags=TAGS,
    )
    def post(self, request):
        serializer = PurchaseRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = get_payment_orchestrator().initiate_proxy_purchase(request.user, **serializer.validated_data)
        if not result.success:
            return error_response(result)

        return Response(PaymentInitiationSerializer(result.data).data, status=status.HTTP_201_CREATED)


class DepositView(APIView):
    """
    Start a wallet deposit.

    POST /api/v1/payments/deposit/

    Request body:
        {"amount": "50.00", "provider": "cryptomus"}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="deposit_to_wallet",
        summary="Deposit to wallet",
        request=DepositRequestSerializer,
        responses={
            201: PaymentInitiationSerializer,
            400: OpenApiResponse(description="Invalid amount or provider"),
            502: OpenApiResponse(description="Payment provider rejected the checkout"),
        },
        tags=TAGS,
    )
    def post(self, request):
        serializer = DepositRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = get_payment_orchestrator().initiate_wallet_deposit(request.user, **serializer.validated_data)
        if not result.success:
            return error_response(result)

        return Response(PaymentInitiationSerializer(result.data).data, status=status.HTTP_201_CREATED)


class PaymentListView(APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="list_payments",
        summary="List my payments",
        parameters=[
            OpenApiParameter(name="status", type=str, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="type", type=str, location=OpenApiParameter.QUERY, required=False),
        ],
        responses={200: PaymentIntentSerializer(many=True)},
        tags=TAGS,
    )
    def get(self, request):
        payments = PaymentGateway.get_user_payments(
            request.user,
            status=request.query_params.get("status"),
            payment_type=request.query_params.get("type"),
        )
        return Response(PaymentIntentSerializer(payments, many=True).data)


class WalletView(APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_wallet",
        summary="Get wallet balance",
        responses={200: WalletSerializer},
        tags=TAGS,
    )
    def get(self, request):
        request.user.refresh_from_db(fields=["wallet_balance"])
        data = {
            "balance": request.user.wallet_balance,
            "transactions": PaymentGateway.get_user_transactions(request.user),
        }
        return Response(WalletSerializer(data).data)


class PaymentDetailView(APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_payment",
        summary="Get payment",
        responses={200: PaymentIntentSerializer, 404: OpenApiResponse(description="Payment not found")},
        tags=TAGS,
    )
    def get(self, request, order_id: str):
        try:
            payment = PaymentGateway.get_payment_by_order_id(order_id, user=request.user)
        except PaymentNotFoundError as e:
            return Response(e.to_dict(), status=status.HTTP_404_NOT_FOUND)
        return Response(PaymentIntentSerializer(payment).data)


class VerifyPaymentView(APIView):
    """
    Reconcile a payment with its provider.

    Called by the billing success page. Safe to repeat: a payment that is
    already completed is returned without contacting the provider.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="verify_payment",
        summary="Verify payment",
        request=None,
        responses={
            200: PaymentIntentSerializer,
            404: OpenApiResponse(description="Payment not found"),
            502: OpenApiResponse(description="Provider verification failed"),
        },
        tags=TAGS,
    )
    def post(self, request, order_id: str):
        result = get_payment_orchestrator().verify_payment_status(order_id, user=request.user)
        if not result.success:
            return error_response(result)
        return Response(PaymentIntentSerializer(result.data).data)


class CancelPaymentView(APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="cancel_payment",
        summary="Cancel pending payment",
        request=None,
        responses={
            200: PaymentIntentSerializer,
            400: OpenApiResponse(description="Payment is not pending"),
            404: OpenApiResponse(description="Payment not found"),
            502: OpenApiResponse(description="Provider refused cancellation"),
        },
        tags=TAGS,
    )
    def post(self, request, order_id: str):
        result = get_payment_orchestrator().cancel_payment(order_id, user=request.user)
        if not result.success:
            return error_response(result)
        return Response(PaymentIntentSerializer(result.data).data)
