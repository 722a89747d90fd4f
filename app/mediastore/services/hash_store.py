"""
Content hash records with atomic reference counting.

HashStore owns the FileHash table. Reference counts are only ever changed
with single UPDATE statements built from F() expressions, so concurrent
ingests and releases of the same content never lose an update. When a
decrement drops the count to zero the record is cleaned up: the physical
files are removed best-effort and the row is deleted last.

Usage:
    store = HashStore()
    record = store.find_by_hash(HashStore.compute_hash(data))
    if record:
        store.increment_ref(record.pk)
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any

from django.db import IntegrityError, transaction
from django.db.models import BigIntegerField, F, Sum

from core.exceptions import NotFoundError
from core.services import BaseService
from mediastore.exceptions import DuplicateKeyError
from mediastore.models import FileHash
from mediastore.services.blobs import remove_file

if TYPE_CHECKING:
    from django.db.models import QuerySet

# Read size when hashing files from disk
HASH_CHUNK_SIZE = 1024 * 1024


class HashStore(BaseService):
    """Persistence and refcounting for FileHash records."""

    # =========================================================================
    # Hashing
    # =========================================================================

    @staticmethod
    def compute_hash(data: bytes) -> str:
        """SHA-256 hex digest of the full content."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def compute_file_hash(path: str, chunk_size: int = HASH_CHUNK_SIZE) -> str:
        """SHA-256 hex digest of a file, streamed in chunks."""
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()

    # =========================================================================
    # Records
    # =========================================================================

    def find_by_hash(self, file_hash: str) -> FileHash | None:
        return FileHash.objects.filter(hash=file_hash).first()

    def create(
        self,
        file_hash: str,
        file_path: str,
        file_size: int,
        mime_type: str,
        width: int | None = None,
        height: int | None = None,
        duration: float | None = None,
        thumbnail_path: str | None = None,
    ) -> FileHash:
        """
        Insert a new record with ref_count = 1.

        Runs in its own savepoint so a unique violation leaves any outer
        transaction usable.

        Raises:
            DuplicateKeyError: If a record for file_hash already exists.
        """
        try:
            with transaction.atomic():
                record = FileHash.objects.create(
                    hash=file_hash,
                    file_path=file_path,
                    file_size=file_size,
                    mime_type=mime_type,
                    width=width,
                    height=height,
                    duration=duration,
                    thumbnail_path=thumbnail_path,
                    ref_count=1,
                )
        except IntegrityError as e:
            self.get_logger().info(
                "Concurrent insert for hash",
                extra={"hash": file_hash},
            )
            raise DuplicateKeyError(
                "A record for this hash already exists",
                details={"hash": file_hash},
            ) from e

        self.get_logger().info(
            "Created file hash record",
            extra={"hash": file_hash, "file_size": file_size, "mime_type": mime_type},
        )
        return record

    # =========================================================================
    # Reference counting
    # =========================================================================

    def increment_ref(self, record_id: int) -> int:
        """
        Atomically add one reference to a live record.

        Dead rows (ref_count <= 0) are not revived; they are on their way
        out and the caller must treat them as absent.

        Returns:
            Number of rows updated (always 1).

        Raises:
            NotFoundError: If the row is missing or already dead.
        """
        updated = FileHash.objects.filter(pk=record_id, ref_count__gt=0).update(
            ref_count=F("ref_count") + 1
        )
        if updated == 0:
            raise NotFoundError(
                "File hash record not found",
                details={"id": record_id},
            )
        return updated

    def decrement_ref(self, record_id: int) -> int:
        """
        Atomically remove one reference and clean up at zero.

        Returns:
            The remaining reference count (0 once cleaned up).

        Raises:
            NotFoundError: If the row is missing or already dead.
        """
        updated = FileHash.objects.filter(pk=record_id, ref_count__gt=0).update(
            ref_count=F("ref_count") - 1
        )
        if updated == 0:
            raise NotFoundError(
                "File hash record not found",
                details={"id": record_id},
            )

        record = FileHash.objects.filter(pk=record_id).first()
        if record is None:
            # A concurrent release already cleaned up
            return 0

        if record.ref_count <= 0:
            self.cleanup(record)
            return 0

        return record.ref_count

    def cleanup(self, record: FileHash) -> bool:
        """
        Remove a dead record and its files.

        The row is locked and ref_count re-checked first; a concurrent
        increment that revived the record aborts the cleanup. File deletion
        is best-effort and only logged. The row is deleted last.

        Returns:
            True if the record was removed, False if it was revived or is
            already gone.
        """
        logger = self.get_logger()

        with transaction.atomic():
            locked = (
                FileHash.objects.select_for_update()
                .filter(pk=record.pk, ref_count__lte=0)
                .first()
            )
            if locked is None:
                logger.debug(
                    "Skipping cleanup, record revived or already removed",
                    extra={"hash": record.hash},
                )
                return False

            remove_file(locked.file_path)
            remove_file(locked.thumbnail_path)
            locked.delete()

        logger.info(
            "Cleaned up file hash record",
            extra={"hash": record.hash, "file_size": record.file_size},
        )
        return True

    def unreferenced(self) -> QuerySet[FileHash]:
        """Records with no live references left behind by interrupted releases."""
        return FileHash.objects.filter(ref_count__lte=0)

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        """
        Summarize deduplication effectiveness.

        Returns:
            Dict with total_unique_files, total_references, duplicates_saved,
            bytes_stored, bytes_saved and dedup_rate (percent, 2 decimals).
        """
        live = FileHash.objects.filter(ref_count__gt=0)
        unique_files = live.count()

        totals = live.aggregate(
            references=Sum("ref_count"),
            bytes_stored=Sum("file_size"),
            bytes_saved=Sum(
                F("file_size") * (F("ref_count") - 1),
                output_field=BigIntegerField(),
            ),
        )
        references = totals["references"] or 0
        duplicates_saved = references - unique_files
        dedup_rate = round(duplicates_saved / references * 100, 2) if references else 0.0

        return {
            "total_unique_files": unique_files,
            "total_references": references,
            "duplicates_saved": duplicates_saved,
            "bytes_stored": totals["bytes_stored"] or 0,
            "bytes_saved": totals["bytes_saved"] or 0,
            "dedup_rate": dedup_rate,
        }
