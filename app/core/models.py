"""
Abstract base models shared by every domain app.

Base Classes:
    BaseModel: created_at / updated_at timestamps
    UUIDPrimaryKeyMixin: UUID primary key instead of an auto-increment integer

Usage:
    from core.models import BaseModel, UUIDPrimaryKeyMixin

    class PaymentIntent(UUIDPrimaryKeyMixin, BaseModel):
        order_id = models.CharField(max_length=64, unique=True)

Note:
    Always list mixins before BaseModel in the inheritance list.
"""

from __future__ import annotations

import uuid

from django.db import models


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use a random UUID as primary key.

    Payment records are referenced from redirect URLs, webhook payloads and
    provider metadata, so their ids must not be guessable or reveal volume.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class BaseModel(models.Model):
    """
    Abstract model adding creation and modification timestamps.

    Fields:
        created_at: Set once when the row is inserted (indexed)
        updated_at: Refreshed on every save
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this record was created",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when this record was last modified",
    )

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(id={self.pk})"
