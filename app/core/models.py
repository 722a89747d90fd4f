"""
Core base model shared by the media store's domain models.

Base Classes:
    BaseModel: Abstract model with timestamps (created_at, updated_at)

Usage:
    from core.models import BaseModel

    class FileHash(BaseModel):
        hash = models.CharField(max_length=64, unique=True)

Note:
    - Always list mixins before BaseModel in inheritance
    - This is infrastructure only; no domain-specific logic belongs here
"""

from __future__ import annotations

from django.db import models


class BaseModel(models.Model):
    """
    Abstract base model providing creation/modification timestamps.

    Fields:
        created_at: Set once when the row is inserted
        updated_at: Refreshed on every save()

    Note:
        Queryset .update() calls (used for atomic counters) bypass auto_now,
        so updated_at only moves on full saves.
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,  # Index for age-based sweeps
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
        """Default string representation using primary key."""
        return f"{self.__class__.__name__}(id={self.pk})"
