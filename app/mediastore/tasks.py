"""
Celery tasks for media store maintenance.

This module provides tasks for:
- Reconciling blobs and thumbnails left on disk without a record
- Finishing cleanup of records whose references all went away
- Generating derivatives of stored blobs off the request path

The periodic tasks are scheduled through CELERY_BEAT_SCHEDULE in settings.

Usage:
    from mediastore.tasks import generate_derivative

    generate_derivative.delay(
        file_hash,
        "/srv/media/derivatives/preview.jpg",
        {"max_width": 800, "format": "jpeg"},
    )
"""

from __future__ import annotations

import logging
import os
import time

from celery import shared_task
from django.conf import settings

from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Prefix of in-flight temporary files written next to blobs
TEMP_FILE_PREFIX = ".tmp-"


# =============================================================================
# Periodic Tasks
# =============================================================================


@shared_task
def reconcile_orphaned_blobs(grace_hours: int | None = None) -> dict:
    """
    Delete stored files that no FileHash record points to.

    Cleanup removes the row even when deleting its files fails, and a crash
    between the blob write and the row insert leaves a file behind. Both
    end up here. Files younger than the grace period are skipped so that
    ingests still in flight are never touched.

    Args:
        grace_hours: Minimum file age. Defaults to settings.MEDIASTORE_ORPHAN_GRACE_HOURS.

    Returns:
        Dict with scanned, removed_blobs, removed_thumbnails and failed counts.
    """
    from mediastore.models import FileHash
    from mediastore.services.blobs import remove_file
    from mediastore.services.paths import StoragePathResolver

    if grace_hours is None:
        grace_hours = settings.MEDIASTORE_ORPHAN_GRACE_HOURS
    cutoff = time.time() - grace_hours * 3600

    resolver = StoragePathResolver()

    known_blobs = {
        os.path.normpath(path)
        for path in FileHash.objects.values_list("file_path", flat=True)
    }
    known_thumbnails = {
        os.path.normpath(path)
        for path in FileHash.objects.exclude(thumbnail_path__isnull=True).values_list(
            "thumbnail_path", flat=True
        )
    }

    stats = {"scanned": 0, "removed_blobs": 0, "removed_thumbnails": 0, "failed": 0}

    for root, known, field, counter in (
        (resolver.hashes_root, known_blobs, "file_path", "removed_blobs"),
        (resolver.thumbnails_root, known_thumbnails, "thumbnail_path", "removed_thumbnails"),
    ):
        for path in _iter_files(root):
            stats["scanned"] += 1

            if os.path.normpath(path) in known:
                continue

            try:
                modified = os.path.getmtime(path)
            except FileNotFoundError:
                continue
            if modified > cutoff:
                continue

            # An ingest may have committed a row for this path since the snapshot
            if FileHash.objects.filter(**{field: path}).exists():
                continue

            if remove_file(path):
                stats[counter] += 1
                logger.info(
                    "Removed orphaned file",
                    extra={
                        "path": path,
                        "temporary": os.path.basename(path).startswith(TEMP_FILE_PREFIX),
                    },
                )
            else:
                stats["failed"] += 1

    logger.info("Reconciled orphaned blobs", extra=stats)
    return stats


@shared_task
def cleanup_unreferenced_hashes() -> dict:
    """
    Finish cleanup of records whose ref_count reached zero.

    A worker that crashed between the final decrement and cleanup leaves a
    dead row behind. Records revived in the meantime are skipped by
    HashStore.cleanup().

    Returns:
        Dict with cleaned_count and skipped_count.
    """
    from mediastore.services.hash_store import HashStore

    store = HashStore()
    cleaned_count = 0
    skipped_count = 0

    for record in list(store.unreferenced()):
        if store.cleanup(record):
            cleaned_count += 1
        else:
            skipped_count += 1

    if cleaned_count > 0:
        logger.info(
            f"Cleaned up {cleaned_count} unreferenced file hashes",
            extra={"cleaned_count": cleaned_count, "skipped_count": skipped_count},
        )

    return {"cleaned_count": cleaned_count, "skipped_count": skipped_count}


# =============================================================================
# Derivative Tasks
# =============================================================================


@shared_task(acks_late=True)
def generate_derivative(file_hash: str, output_path: str, options: dict | None = None) -> dict:
    """
    Produce a derivative of a stored blob.

    Derivatives are not deduplicated; each call writes output_path.

    Args:
        file_hash: Hash of the stored source blob.
        output_path: Where to write the derivative.
        options: ProcessOptions fields as a dict.

    Returns:
        ProcessResult as a dict (success, path, width, ... or error, error_code).
    """
    from mediastore.models import FileHash
    from mediastore.processors import DerivativeProcessor, ProcessOptions

    record = FileHash.objects.filter(hash=file_hash, ref_count__gt=0).first()
    if record is None:
        logger.warning("No stored blob for derivative", extra={"hash": file_hash})
        return {
            "success": False,
            "error": f"Unknown hash: {file_hash}",
            "error_code": "NOT_FOUND",
        }

    try:
        process_options = ProcessOptions.from_dict(options)
    except ValidationError as e:
        return {"success": False, **e.to_dict()}

    processor = DerivativeProcessor()
    result = processor.process(record.file_path, output_path, process_options)

    logger.info(
        "Derivative task finished",
        extra={
            "hash": file_hash,
            "output_path": output_path,
            "success": result.success,
            "error_code": result.error_code,
        },
    )
    return result.to_dict()


def _iter_files(root: str):
    if not os.path.isdir(root):
        return
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            yield os.path.join(dirpath, filename)
