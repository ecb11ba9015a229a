"""
Payment-specific exceptions.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── ProviderConfigurationError - Missing credentials / unusable adapter
    ├── SignatureError - Webhook signature missing or invalid
    └── ImmutableRecordError - Attempt to edit a TransactionRecord

    PaymentValidationError - Bad input, rejected before any provider call (ValidationError)
    PaymentNotFoundError - Unknown order id (NotFoundError)
    ProviderError - Payment processor call failed (ExternalServiceError)
    ReconciliationConflict - Transition would regress a terminal state (ConflictError)
    LockAcquisitionError - Distributed lock is held elsewhere (ConflictError)

Propagation policy:
    Adapters convert ProviderError into ``success=False`` responses at their
    boundary. ProviderConfigurationError and SignatureError always propagate:
    they describe a setup bug or an unauthenticated caller, not a payment
    outcome. ReconciliationConflict is raised inside the orchestrator and
    converted into a logged ServiceResult failure.

Usage:
    from payments.exceptions import SignatureError

    if not signature:
        raise SignatureError("Signature is required for Cryptomus webhooks")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


class PaymentError(BaseApplicationError):
    """Base exception for payment errors that are not covered by a core category."""

    default_error_code: str = "PAYMENT_ERROR"


class PaymentValidationError(ValidationError):
    """
    Raised for invalid payment input.

    Example:
        raise PaymentValidationError(
            "Invalid plan selection",
            error_code="INVALID_PLAN",
            details={"plan_type": "residential", "tier": "platinum"},
        )
    """

    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


class PaymentNotFoundError(NotFoundError):
    """Raised when no PaymentIntent exists for an order id."""

    default_error_code: str = "PAYMENT_NOT_FOUND"


class ProviderError(ExternalServiceError):
    """
    Raised when a payment processor rejects a request or is unreachable.

    Attributes:
        provider: Provider id ("stripe", "cryptomus")
        status_code: HTTP status returned by the provider, if any
    """

    default_error_code: str = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.provider = provider
        self.status_code = status_code
        merged = {"provider": provider, **(details or {})}
        if status_code is not None:
            merged["status_code"] = status_code
        super().__init__(message, error_code=error_code, details=merged)


class ProviderConfigurationError(PaymentError):
    """Raised when an adapter is constructed without its required credentials."""

    default_error_code: str = "PROVIDER_NOT_CONFIGURED"


class SignatureError(PaymentError):
    """
    Raised when a webhook signature is absent or does not verify.

    The payload must not be processed and nothing may be persisted.
    """

    default_error_code: str = "INVALID_SIGNATURE"


class ReconciliationConflict(ConflictError):
    """
    Raised when a provider-reported status would regress local state.

    Example: the provider says ``completed`` but the record is already
    ``refunded``. Local state wins and the anomaly is logged.
    """

    default_error_code: str = "RECONCILIATION_CONFLICT"


class ImmutableRecordError(PaymentError):
    """Raised when code tries to modify or delete a TransactionRecord."""

    default_error_code: str = "IMMUTABLE_RECORD"


class LockAcquisitionError(ConflictError):
    """Raised when a distributed lock cannot be acquired."""

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


__all__ = [
    "ImmutableRecordError",
    "LockAcquisitionError",
    "PaymentError",
    "PaymentNotFoundError",
    "PaymentValidationError",
    "ProviderConfigurationError",
    "ProviderError",
    "ReconciliationConflict",
    "SignatureError",
]
