"""
FileHash model for content-addressed blob records.

Provides:
- One row per unique SHA-256 content hash (unique constraint on hash)
- Canonical blob and thumbnail paths under the storage root
- Reference counting shared by every logical owner of the same content
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel


class FileHash(BaseModel):
    """
    Content record for a deduplicated blob.

    Attributes:
        hash: Hex SHA-256 of the blob content (unique key).
        file_path: Canonical filesystem path of the blob.
        file_size: Blob size in bytes.
        mime_type: MIME type recorded at first ingest.
        width: Pixel width for images/videos, if known.
        height: Pixel height for images/videos, if known.
        duration: Duration in seconds for videos, if known.
        thumbnail_path: Canonical thumbnail path, if one was generated.
        ref_count: Number of live logical referencers.

    Invariants:
        ref_count is only changed with single UPDATE statements using F()
        expressions. A row whose ref_count is <= 0 is dead and gets removed
        together with its files by HashStore.cleanup().
    """

    hash = models.CharField(
        max_length=64,
        unique=True,
        help_text="Hex SHA-256 of the file content",
    )

    file_path = models.CharField(
        max_length=512,
        help_text="Canonical path of the stored blob",
    )

    file_size = models.BigIntegerField(
        help_text="Blob size in bytes",
    )

    mime_type = models.CharField(
        max_length=127,
        help_text="MIME type recorded at first ingest (e.g., image/jpeg)",
    )

    width = models.PositiveIntegerField(
        blank=True,
        null=True,
        help_text="Pixel width, if the content is visual",
    )

    height = models.PositiveIntegerField(
        blank=True,
        null=True,
        help_text="Pixel height, if the content is visual",
    )

    duration = models.FloatField(
        blank=True,
        null=True,
        help_text="Duration in seconds, for video content",
    )

    thumbnail_path = models.CharField(
        max_length=512,
        blank=True,
        null=True,
        help_text="Canonical path of the generated thumbnail",
    )

    # Not constrained to >= 0 at the database level: a decrement may
    # observe 0 (or below, after a crash) before cleanup removes the row.
    ref_count = models.IntegerField(
        default=1,
        db_index=True,
        help_text="Number of live logical references to this content",
    )

    class Meta:
        """Model metadata."""

        verbose_name = "File Hash"
        verbose_name_plural = "File Hashes"
        ordering = ["-created_at"]

        constraints = [
            models.CheckConstraint(
                condition=models.Q(file_size__gte=0),
                name="file_hash_size_non_negative",
            ),
        ]

    def __str__(self) -> str:
        """Return short hash with reference count."""
        return f"{self.hash[:12]} (refs={self.ref_count})"

    @property
    def url(self) -> str:
        """Public URL of the blob."""
        from mediastore.services.paths import StoragePathResolver

        return StoragePathResolver().to_public_url(self.file_path)

    @property
    def thumbnail_url(self) -> str | None:
        """Public URL of the thumbnail, if any."""
        if not self.thumbnail_path:
            return None

        from mediastore.services.paths import StoragePathResolver

        return StoragePathResolver().to_public_url(self.thumbnail_path)
