"""
Tests for the User model and its manager.
"""

from decimal import Decimal

import pytest
from django.db import IntegrityError, transaction

from authentication.models import User
from authentication.tests.factories import UserFactory


class TestUserManager:
    """Tests for UserManager.create_user / create_superuser."""

    def test_creates_user_with_email_and_password(self, db):
        user = User.objects.create_user(email="buyer@example.com", password="Secret123!")

        assert user.pk is not None
        assert user.check_password("Secret123!") is True
        assert user.wallet_balance == Decimal("0.00")

    def test_normalizes_email_domain(self, db):
        user = User.objects.create_user(email="buyer@EXAMPLE.COM", password="x")

        assert user.email == "buyer@example.com"

    def test_requires_email(self, db):
        with pytest.raises(ValueError, match="Email field must be set"):
            User.objects.create_user(email="", password="x")

    def test_user_without_password_gets_unusable_password(self, db):
        user = User.objects.create_user(email="oauth@example.com")

        assert user.has_usable_password() is False

    def test_create_superuser_sets_flags(self, db):
        admin = User.objects.create_superuser(email="ops@example.com", password="x")

        assert admin.is_staff is True
        assert admin.is_superuser is True

    def test_create_superuser_rejects_non_staff(self, db):
        with pytest.raises(ValueError, match="is_staff=True"):
            User.objects.create_superuser(
                email="ops@example.com", password="x", is_staff=False
            )


class TestUserModel:
    """Tests for User fields and constraints."""

    def test_str_is_email(self, db):
        user = UserFactory(email="display@example.com")

        assert str(user) == "display@example.com"

    def test_wallet_balance_cannot_go_negative(self, db):
        user = UserFactory()

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                User.objects.filter(pk=user.pk).update(wallet_balance=Decimal("-1.00"))
