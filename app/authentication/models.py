"""
Authentication models.

This module defines the account model for the proxy dashboard:
- User: email-based login plus the prepaid wallet balance that deposits
  credit and plan purchases may later spend

Related files:
    - managers.py: Custom user manager for email-based creation
    - payments.services.payment_gateway: the only writer of wallet_balance
"""

from decimal import Decimal

from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models

from authentication.managers import UserManager


class User(AbstractBaseUser, PermissionsMixin):
    """
    Custom User model using email as the primary identifier.

    Fields:
        email: Primary identifier, unique, used for login
        wallet_balance: Prepaid balance in the platform currency (major units)
        is_active: Whether the user account is active
        is_staff: Whether the user can access Django admin
        date_joined: When the user account was created
        updated_at: When the user record was last modified

    Note:
        wallet_balance must only be changed through
        PaymentGateway.update_user_wallet_balance, which locks the row and
        applies the delta with an F() expression.
    """

    email = models.EmailField(
        unique=True,
        db_index=True,
        max_length=254,
        help_text="User's email address (primary identifier)",
    )

    wallet_balance = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Prepaid wallet balance in major currency units",
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Whether this user account is active. Deselect instead of deleting.",
    )
    is_staff = models.BooleanField(
        default=False,
        help_text="Whether the user can access the admin site.",
    )

    date_joined = models.DateTimeField(
        auto_now_add=True,
        help_text="When the user account was created",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When the user record was last modified",
    )

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        verbose_name = "user"
        verbose_name_plural = "users"
        ordering = ["-date_joined"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(wallet_balance__gte=0),
                name="user_wallet_balance_non_negative",
            ),
        ]

    def __str__(self):
        return self.email
