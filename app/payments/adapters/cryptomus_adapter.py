"""
Cryptomus adapter (crypto invoices over signed REST).

Two signature schemes are in play and both are required by Cryptomus:

- Outbound requests carry a ``sign`` header of
  ``md5(base64(json_body) + payment_key)``; a body-less GET signs the
  empty string.
- Inbound webhooks are verified with HMAC-SHA256 (key = payment key) over
  the payload re-serialized with its top-level keys sorted.

Cryptomus has no subscription primitive. Recurring requests are issued as
one-time invoices and the dropped recurrence terms are logged.

Internal order context travels in ``additional_data`` (a JSON string),
because Cryptomus only echoes ``order_id`` back as structured data.

Usage:
    adapter = CryptomusAdapter(merchant_id="...", payment_key="...")
    response = adapter.create_one_time_payment(user, metadata, success_url, cancel_url)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any

import httpx

from payments.adapters.base import (
    CreatePaymentResponse,
    NormalizedWebhookEvent,
    PaymentMetadata,
    PaymentProvider,
    RecurringPaymentMetadata,
    VerifyPaymentResponse,
)
from payments.exceptions import ProviderConfigurationError, ProviderError, SignatureError
from payments.state_machines import PaymentProviderId, PaymentStatus

DEFAULT_API_BASE = "https://api.cryptomus.com"

STATUS_MAP = {
    "paid": PaymentStatus.COMPLETED,
    "paid_over": PaymentStatus.COMPLETED,
    "fail": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
    "system_fail": PaymentStatus.FAILED,
    "wrong_amount": PaymentStatus.FAILED,
    "cancel": PaymentStatus.CANCELED,
    "canceled": PaymentStatus.CANCELED,
    "refund_paid": PaymentStatus.REFUNDED,
    "refunded": PaymentStatus.REFUNDED,
}


def map_status(provider_status: str | None) -> str:
    return STATUS_MAP.get(provider_status or "", PaymentStatus.PENDING)


def _compact_json(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def request_signature(body: dict[str, Any] | None, payment_key: str) -> str:
    """md5(base64(json_body) + payment_key) as sent in the ``sign`` header."""
    raw = _compact_json(body) if body else ""
    encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    return hashlib.md5((encoded + payment_key).encode("utf-8")).hexdigest()


def webhook_signature(payload: dict[str, Any], payment_key: str) -> str:
    """HMAC-SHA256 hex digest over the payload with top-level keys sorted."""
    canonical = _compact_json({key: payload[key] for key in sorted(payload)})
    return hmac.new(
        payment_key.encode("utf-8"),
        canonical.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class CryptomusAdapter(PaymentProvider):
    """Payment provider backed by Cryptomus invoices."""

    provider_id = PaymentProviderId.CRYPTOMUS
    display_name = "Cryptomus"

    def __init__(
        self,
        merchant_id: str,
        payment_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeout_seconds: int = 10,
        payment_lifetime_seconds: int = 3600,
        client: httpx.Client | None = None,
    ):
        if not merchant_id or not payment_key:
            raise ProviderConfigurationError(
                "Cryptomus requires both merchant id and payment key",
                details={"provider": self.provider_id},
            )

        self.merchant_id = merchant_id
        self.payment_key = payment_key
        self.payment_lifetime_seconds = payment_lifetime_seconds
        self.client = client or httpx.Client(
            base_url=api_base.rstrip("/"),
            timeout=timeout_seconds,
        )

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
        body = {
            "order_id": metadata.order_id,
            "amount": f"{metadata.amount:.2f}",
            "currency": metadata.currency,
            "url_callback": metadata.callback_url,
            "url_return": cancel_url,
            "url_success": success_url,
            "is_payment_multiple": False,
            "lifetime": self.payment_lifetime_seconds,
            "additional_data": _compact_json(
                {
                    "user_id": str(metadata.user_id),
                    "description": metadata.description or f"Payment {metadata.order_id}",
                    "email": metadata.customer_email,
                }
            ),
        }

        try:
            result = self._request("POST", "/v1/payment", body, order_id=metadata.order_id)
        except ProviderError as e:
            return CreatePaymentResponse(success=False, error=e.message)

        return CreatePaymentResponse(
            success=True,
            redirect_url=result.get("url"),
            payment_id=result.get("uuid"),
            provider_reference=result.get("order_id"),
        )

    def create_recurring_payment(
        self,
        user: Any,
        metadata: RecurringPaymentMetadata,
        success_url: str,
        cancel_url: str,
    ) -> CreatePaymentResponse:
        """
        Issue a one-time invoice for a recurring request.

        interval, interval_count and trial_period_days are not sent; the
        customer pays each period through a fresh invoice.
        """
        self.get_logger().info(
            "Cryptomus has no subscriptions, creating one-time payment instead",
            extra={
                "order_id": metadata.order_id,
                "interval": str(metadata.interval),
                "interval_count": metadata.interval_count,
                "trial_period_days": metadata.trial_period_days,
            },
        )
        return self.create_one_time_payment(user, metadata, success_url, cancel_url)

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_payment(self, payment_id: str) -> VerifyPaymentResponse:
        try:
            result = self._request("GET", f"/v1/payment/{payment_id}", payment_id=payment_id)
        except ProviderError as e:
            return VerifyPaymentResponse(success=False, status=PaymentStatus.FAILED, error=e.message)

        amount = result.get("amount")
        return VerifyPaymentResponse(
            success=True,
            status=map_status(result.get("status")),
            amount=Decimal(str(amount)) if amount not in (None, "") else None,
            currency=result.get("currency"),
            metadata={
                "order_id": result.get("order_id"),
                "network": result.get("network"),
                "payer_amount": result.get("payer_amount") or result.get("payment_amount"),
                "payer_currency": result.get("payer_currency") or result.get("payment_currency"),
                "additional_data": result.get("additional_data"),
            },
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def handle_webhook(self, payload: bytes, signature: str | None) -> NormalizedWebhookEvent:
        """
        Verify a Cryptomus callback and normalize it.

        The signature comes from the ``sign`` header or, when the header is
        absent, from the body's ``sign`` field. The field is removed before
        the HMAC is recomputed.

        Raises:
            SignatureError: Missing or mismatched signature, or unparseable body
        """
        logger = self.get_logger()

        try:
            data = json.loads(payload)
        except ValueError as e:
            logger.warning("Cryptomus webhook rejected: body is not JSON")
            raise SignatureError("Webhook body is not valid JSON") from e
        if not isinstance(data, dict):
            raise SignatureError("Webhook body must be a JSON object")

        body_signature = data.pop("sign", None)
        received = signature or body_signature
        if not received:
            logger.warning("Cryptomus webhook rejected: signature missing")
            raise SignatureError("Signature is required for Cryptomus webhooks")

        expected = webhook_signature(data, self.payment_key)
        if not hmac.compare_digest(str(received).lower(), expected):
            logger.warning(
                "Cryptomus webhook signature mismatch",
                extra={"order_id": data.get("order_id"), "payment_id": data.get("uuid")},
            )
            raise SignatureError("Invalid webhook signature")

        provider_status = data.get("status") or ""
        payment_id = data.get("uuid") or ""
        event = NormalizedWebhookEvent(
            event_id=f"{payment_id}:{provider_status}",
            type=f"payment_{provider_status}",
            payment_id=payment_id,
            status=map_status(provider_status),
            metadata={
                "order_id": data.get("order_id"),
                "amount": data.get("amount"),
                "currency": data.get("currency"),
                "network": data.get("network"),
                "additional_data": data.get("additional_data"),
            },
            raw_data=data,
        )

        logger.info(
            "Cryptomus webhook verified",
            extra={
                "event_id": event.event_id,
                "order_id": event.order_id,
                "status": str(event.status),
            },
        )
        return event

    # =========================================================================
    # HTTP
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        **context: Any,
    ) -> dict[str, Any]:
        """
        Send a signed request and unwrap ``result``.

        Raises:
            ProviderError: Transport failure or non-2xx response
        """
        logger = self.get_logger()
        log_context = {"operation": f"{method} {path}", "provider": self.provider_id, **context}

        headers = {
            "merchant": self.merchant_id,
            "sign": request_signature(body, self.payment_key),
            "Content-Type": "application/json",
        }
        content = _compact_json(body).encode("utf-8") if body else None

        start_time = time.time()
        logger.info("Starting Cryptomus request", extra=log_context)

        try:
            response = self.client.request(method, path, content=content, headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "Cryptomus request failed",
                extra={**log_context, "error": str(e)},
                exc_info=True,
            )
            raise ProviderError(
                f"Cryptomus API error: {e}",
                self.provider_id,
                error_code="PROVIDER_UNAVAILABLE",
            ) from e

        duration_ms = (time.time() - start_time) * 1000

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            message = (data.get("message") if isinstance(data, dict) else None) or response.reason_phrase
            logger.error(
                "Cryptomus API error",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise ProviderError(
                f"Cryptomus API error: {response.status_code} {message}",
                self.provider_id,
                status_code=response.status_code,
            )

        logger.info(
            "Cryptomus request completed",
            extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
        )

        if not isinstance(data, dict):
            return {}
        return data.get("result") or data


__all__ = ["CryptomusAdapter", "map_status", "request_signature", "webhook_signature"]
