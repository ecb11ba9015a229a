"""
Custom user manager for email-based authentication.

Security:
    - Passwords are hashed via set_password()
    - Email addresses are normalized (lowercase domain)
"""

from django.contrib.auth.models import BaseUserManager


class UserManager(BaseUserManager):
    """
    Manager for User with email as the login identifier.

    Usage:
        user = User.objects.create_user(email="buyer@example.com", password="...")
        admin = User.objects.create_superuser(email="ops@example.com", password="...")
    """

    def create_user(self, email, password=None, **extra_fields):
        """
        Create and save a regular user.

        Args:
            email: User's email address (required)
            password: User's password; an unusable password is set when omitted
            **extra_fields: Additional model fields

        Raises:
            ValueError: If email is not provided
        """
        if not email:
            raise ValueError("The Email field must be set")

        email = self.normalize_email(email)
        extra_fields.setdefault("is_staff", False)
        extra_fields.setdefault("is_superuser", False)

        user = self.model(email=email, **extra_fields)
        if password:
            user.set_password(password)
        else:
            user.set_unusable_password()

        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        """
        Create and save a superuser for the admin panel.

        Raises:
            ValueError: If is_staff or is_superuser is explicitly not True
        """
        extra_fields.setdefault("is_staff", True)
        extra_fields.setdefault("is_superuser", True)

        if extra_fields.get("is_staff") is not True:
            raise ValueError("Superuser must have is_staff=True.")
        if extra_fields.get("is_superuser") is not True:
            raise ValueError("Superuser must have is_superuser=True.")

        return self.create_user(email, password, **extra_fields)
