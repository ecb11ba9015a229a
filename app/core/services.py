"""
Base service layer patterns for business logic encapsulation.

This module provides:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with logging and transaction helpers

Pattern Comparison:
    - ServiceResult: expected failures (validation, provider declines, conflicts)
    - Exceptions: unexpected failures (database errors, misconfiguration, bugs)

Usage:
    from core.services import BaseService, ServiceResult

    class WalletService(BaseService):
        @classmethod
        def credit(cls, user, amount) -> ServiceResult[Decimal]:
            if amount <= 0:
                return ServiceResult.failure("Amount must be positive", "INVALID_AMOUNT")

            with cls.atomic():
                ...

            cls.get_logger().info("Wallet credited", extra={"user_id": user.pk})
            return ServiceResult.success(new_balance)

    # In view
    result = WalletService.credit(request.user, amount)
    if result.success:
        return Response({"balance": str(result.data)})
    return Response(result.to_response(), status=400)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures

    Usage:
        return ServiceResult.success(payment)
        return ServiceResult.failure("Payment not found", "PAYMENT_NOT_FOUND")

        result = orchestrator.verify_payment_status(order_id)
        if not result:
            logger.warning(result.error)
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """Create a successful result carrying ``data``."""
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        Application errors keep their own ``error_code``; anything else
        falls back to the upper-cased exception class name.
        """
        message = getattr(exc, "message", None) or str(exc)
        code = error_code or getattr(exc, "error_code", None) or exc.__class__.__name__.upper()
        return cls(success=False, error=message, error_code=code)

    def to_response(self) -> dict[str, Any]:
        """Convert to a dictionary suitable for returning from a DRF view."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        return response

    def map(self, func) -> ServiceResult:
        """
        Transform the data if successful.

        Failed results are returned unchanged.

        Example:
            result = orchestrator.get_payment(order_id, user)
            serialized = result.map(lambda p: PaymentIntentSerializer(p).data)
        """
        if self.success and self.data is not None:
            return ServiceResult.success(func(self.data))
        return self  # type: ignore

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides:
    - A logger named after the concrete service class
    - Database transaction management
    - Exception to ServiceResult conversion with logging
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Return a logger named ``<module>.<ServiceClass>`` for easy filtering."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around ``transaction.atomic()`` that makes transaction
        boundaries explicit in service code. Nested use creates savepoints.
        """
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Log an exception and convert it to a failed ServiceResult.

        Example:
            try:
                provider.refund_payment(payment_id)
            except ProviderError as e:
                return cls.handle_exception(e, "refund", logging.WARNING)
        """
        message = f"{context}: {exc}" if context else str(exc)
        cls.get_logger().log(log_level, message, exc_info=log_level >= logging.ERROR)
        return ServiceResult.from_exception(exc)
