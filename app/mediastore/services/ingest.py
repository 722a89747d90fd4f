"""
Deduplicating ingest of uploaded content.

IngestService is the entry point used by logical owners of media: ingest()
turns bytes into a shared FileHash reference and release() gives one back.

Ingest algorithm:
    1. Hash the bytes and detect the content type from them.
    2. Known hash: add a reference and return the stored paths. No write.
    3. New hash: write the blob atomically to its canonical path, read its
       dimensions, generate a thumbnail, then create the record.
    4. Lost a first-writer race (DuplicateKeyError): join the winner by
       adding a reference and discard our own redundant files. If the winner
       disappeared in the meantime, the whole attempt is retried.

The record is only created after the blob is on disk, and the blob is checked
again once the row is committed, so a live row always points at a complete
file.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import magic
from django.conf import settings
from django.db import DatabaseError

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult
from mediastore.exceptions import DuplicateKeyError, StorageIOError
from mediastore.processors.base import MediaInfo, ProcessingError
from mediastore.processors.image import DerivativeProcessor, read_image_info
from mediastore.processors.video import extract_video_frame, probe_video
from mediastore.services.blobs import remove_file, write_blob
from mediastore.services.hash_store import HashStore
from mediastore.services.paths import StoragePathResolver, normalize_extension

if TYPE_CHECKING:
    from mediastore.models import FileHash

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
DEFAULT_EXTENSION = ".bin"

# Bytes handed to libmagic for content detection
MAGIC_HEADER_BYTES = 2048

# libmagic answers these when it has no specific signature
GENERIC_MIME_TYPES = {"application/octet-stream", "text/plain", "application/x-empty"}

# Text formats libmagic reports as text/plain
TEXT_APPLICATION_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-yaml",
}


@dataclass
class IngestResult:
    """
    Outcome of a successful ingest.

    Attributes:
        hash: Content hash.
        path: Canonical blob path.
        thumbnail_path: Thumbnail path, if one exists.
        is_new_blob: True if this call created the record.
        url: Public URL of the blob.
        thumbnail_url: Public URL of the thumbnail.
    """

    hash: str
    path: str
    thumbnail_path: str | None
    is_new_blob: bool
    file_size: int
    mime_type: str
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    url: str | None = None
    thumbnail_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _RetryIngest(Exception):
    """The record changed under us; start the attempt over."""


class IngestService(BaseService):
    """
    Ingest and release content-addressed media.

    Args:
        hash_store: Record store. Defaults to a new HashStore.
        resolver: Path layout. Defaults to the configured storage root.
        processor: Thumbnail generator.
        max_attempts: Attempts per ingest when racing with releases.
        retry_backoff: Base delay in seconds; attempt n waits n * base.
    """

    def __init__(
        self,
        hash_store: HashStore | None = None,
        resolver: StoragePathResolver | None = None,
        processor: DerivativeProcessor | None = None,
        max_attempts: int | None = None,
        retry_backoff: float | None = None,
    ) -> None:
        self.hash_store = hash_store or HashStore()
        self.resolver = resolver or StoragePathResolver()
        self.processor = processor or DerivativeProcessor()
        self.max_attempts = max_attempts or settings.MEDIASTORE_INGEST_MAX_ATTEMPTS
        self._magic = magic.Magic(mime=True)
        self.retry_backoff = (
            retry_backoff
            if retry_backoff is not None
            else settings.MEDIASTORE_INGEST_RETRY_BACKOFF_SECONDS
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def ingest(
        self,
        data: bytes,
        filename: str | None = None,
        mime_type: str | None = None,
        generate_thumbnail: bool = True,
    ) -> ServiceResult[IngestResult]:
        """
        Store content, or add a reference to identical content already stored.

        Args:
            data: Raw file bytes.
            filename: Original filename. Breaks ties when the content alone
                gives only a generic type, and supplies the extension.
            mime_type: Explicit MIME type; detected from the content when omitted.
            generate_thumbnail: Create a thumbnail for images and videos.

        Returns:
            ServiceResult with an IngestResult, or a failure with error_code
            IO_ERROR, DATABASE_ERROR or CONFLICT.
        """
        file_hash = self.hash_store.compute_hash(data)
        mime_type = mime_type or self._detect_mime_type(data, filename)
        extension = _extension_for(filename, mime_type)

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self._ingest_once(
                    data, file_hash, extension, mime_type, generate_thumbnail
                )
            except _RetryIngest as e:
                logger.info(
                    "Retrying ingest",
                    extra={"hash": file_hash, "attempt": attempt, "reason": str(e)},
                )
                if attempt < self.max_attempts:
                    time.sleep(self.retry_backoff * attempt)
                continue
            except StorageIOError as e:
                return ServiceResult.from_exception(e)
            except DatabaseError as e:
                logger.exception(
                    "Database error during ingest",
                    extra={"hash": file_hash, "error": str(e)},
                )
                return ServiceResult.failure(f"Database error: {e}", "DATABASE_ERROR")

            logger.info(
                "Ingested content",
                extra={
                    "hash": file_hash,
                    "is_new_blob": result.is_new_blob,
                    "file_size": result.file_size,
                    "mime_type": mime_type,
                },
            )
            return ServiceResult.success(result)

        logger.warning(
            "Ingest gave up after concurrent changes",
            extra={"hash": file_hash, "attempts": self.max_attempts},
        )
        return ServiceResult.failure(
            f"Could not ingest content after {self.max_attempts} attempts",
            "CONFLICT",
        )

    def release(self, file_hash: str) -> ServiceResult[int]:
        """
        Give back one reference to stored content.

        Returns:
            ServiceResult with the remaining reference count (0 once the
            content has been removed), or NOT_FOUND for an unknown hash.
        """
        record = self.hash_store.find_by_hash(file_hash)
        if record is None or record.ref_count <= 0:
            return ServiceResult.failure(f"Unknown hash: {file_hash}", "NOT_FOUND")

        try:
            remaining = self.hash_store.decrement_ref(record.pk)
        except NotFoundError as e:
            return ServiceResult.from_exception(e)
        except DatabaseError as e:
            logger.exception(
                "Database error during release",
                extra={"hash": file_hash, "error": str(e)},
            )
            return ServiceResult.failure(f"Database error: {e}", "DATABASE_ERROR")

        logger.info(
            "Released content reference",
            extra={"hash": file_hash, "remaining": remaining},
        )
        return ServiceResult.success(remaining)

    # =========================================================================
    # Internals
    # =========================================================================

    def _ingest_once(
        self,
        data: bytes,
        file_hash: str,
        extension: str,
        mime_type: str,
        generate_thumbnail: bool,
    ) -> IngestResult:
        existing = self.hash_store.find_by_hash(file_hash)
        if existing is not None:
            if existing.ref_count > 0:
                try:
                    self.hash_store.increment_ref(existing.pk)
                except NotFoundError as e:
                    raise _RetryIngest("record removed before increment") from e
                return self._to_result(existing, is_new_blob=False)

            # Dead row left by a release that has not finished cleaning up
            if not self.hash_store.cleanup(existing):
                raise _RetryIngest("dead record changed during cleanup")

        blob_path = self.resolver.blob_path(file_hash, extension)
        wrote_blob = write_blob(blob_path, data)

        info = self._read_info(blob_path, mime_type)
        thumbnail_path = None
        if generate_thumbnail:
            thumbnail_path = self._make_thumbnail(blob_path, file_hash, mime_type, info)

        try:
            record = self.hash_store.create(
                file_hash=file_hash,
                file_path=blob_path,
                file_size=len(data),
                mime_type=mime_type,
                width=info.width,
                height=info.height,
                duration=info.duration,
                thumbnail_path=thumbnail_path,
            )
        except DuplicateKeyError:
            return self._join_winner(file_hash, blob_path, wrote_blob, thumbnail_path)

        self._restore_files(record, data, mime_type, info)
        return self._to_result(record, is_new_blob=True)

    def _restore_files(
        self,
        record: FileHash,
        data: bytes,
        mime_type: str,
        info: MediaInfo,
    ) -> None:
        """
        Rewrite files of a just-created record that went missing.

        A reused blob may belong to a dying record whose cleanup unlinked it
        before our row was committed. That cleanup has finished by now, so
        anything missing here stays missing unless rewritten.
        """
        if not os.path.exists(record.file_path):
            logger.warning(
                "Blob removed during ingest, rewriting",
                extra={"hash": record.hash, "path": record.file_path},
            )
            try:
                write_blob(record.file_path, data)
            except StorageIOError:
                self._drop_new_record(record)
                raise

        if record.thumbnail_path and not os.path.exists(record.thumbnail_path):
            logger.warning(
                "Thumbnail removed during ingest, regenerating",
                extra={"hash": record.hash, "path": record.thumbnail_path},
            )
            thumbnail_path = self._make_thumbnail(
                record.file_path, record.hash, mime_type, info
            )
            if thumbnail_path is None:
                record.thumbnail_path = None
                record.save(update_fields=["thumbnail_path"])

    def _drop_new_record(self, record: FileHash) -> None:
        try:
            self.hash_store.decrement_ref(record.pk)
        except NotFoundError:
            logger.debug("New record already gone", extra={"hash": record.hash})

    def _join_winner(
        self,
        file_hash: str,
        blob_path: str,
        wrote_blob: bool,
        thumbnail_path: str | None,
    ) -> IngestResult:
        """Add a reference to the record a concurrent ingest created."""
        winner = self.hash_store.find_by_hash(file_hash)
        if winner is None or winner.ref_count <= 0:
            raise _RetryIngest("winning record removed before join")

        try:
            self.hash_store.increment_ref(winner.pk)
        except NotFoundError as e:
            raise _RetryIngest("winning record removed during join") from e

        # Same content under a different extension leaves a redundant blob
        if wrote_blob and blob_path != winner.file_path:
            remove_file(blob_path)
        if thumbnail_path and thumbnail_path != winner.thumbnail_path:
            remove_file(thumbnail_path)

        return self._to_result(winner, is_new_blob=False)

    def _detect_mime_type(self, data: bytes, filename: str | None) -> str:
        """
        MIME type from the content header, refined by the filename.

        The filename is only trusted when libmagic returns a generic type and
        the filename names a type of the same kind: a text format for
        text/plain, or a non-media type for unidentified binary data. Media
        files carry signatures libmagic knows, so a media filename on
        unidentified content is not believed.
        """
        detected = None
        header = data[:MAGIC_HEADER_BYTES]
        if header:
            try:
                detected = self._magic.from_buffer(header)
            except magic.MagicException as e:
                logger.warning(
                    "Could not detect content type",
                    extra={"filename": filename, "error": str(e)},
                )

        if detected and detected not in GENERIC_MIME_TYPES:
            return detected

        guessed = mimetypes.guess_type(filename)[0] if filename else None
        if guessed:
            if detected == "text/plain":
                if guessed.startswith("text/") or guessed in TEXT_APPLICATION_TYPES:
                    return guessed
            elif guessed.split("/", 1)[0] not in ("image", "video", "audio"):
                return guessed

        if detected == "text/plain":
            return detected
        return DEFAULT_MIME_TYPE

    def _read_info(self, blob_path: str, mime_type: str) -> MediaInfo:
        kind = mime_type.split("/", 1)[0]
        try:
            if kind == "image":
                return read_image_info(blob_path)
            if kind == "video":
                return probe_video(blob_path)
        except (ProcessingError, OSError) as e:
            logger.warning(
                "Could not read media info",
                extra={"path": blob_path, "mime_type": mime_type, "error": str(e)},
            )
        return MediaInfo()

    def _make_thumbnail(
        self,
        blob_path: str,
        file_hash: str,
        mime_type: str,
        info: MediaInfo,
    ) -> str | None:
        """
        Generate the thumbnail for a new blob.

        Images go straight through the thumbnail preset; videos first have a
        still frame extracted. Failures are logged and leave no thumbnail.
        """
        kind = mime_type.split("/", 1)[0]
        if kind not in ("image", "video"):
            return None

        thumbnail_path = self.resolver.thumbnail_path(file_hash)

        if kind == "image":
            result = self.processor.generate_thumbnail(blob_path, thumbnail_path)
        else:
            try:
                with tempfile.TemporaryDirectory() as temp_dir:
                    frame_path = extract_video_frame(
                        blob_path,
                        os.path.join(temp_dir, "frame.png"),
                        duration=info.duration,
                    )
                    result = self.processor.generate_thumbnail(frame_path, thumbnail_path)
            except (ProcessingError, OSError) as e:
                logger.warning(
                    "Could not extract video frame",
                    extra={"path": blob_path, "error": str(e)},
                )
                return None

        if not result.success:
            logger.warning(
                "Thumbnail generation failed",
                extra={
                    "path": blob_path,
                    "error": result.error,
                    "error_code": result.error_code,
                },
            )
            return None

        return thumbnail_path

    def _to_result(self, record: FileHash, is_new_blob: bool) -> IngestResult:
        return IngestResult(
            hash=record.hash,
            path=record.file_path,
            thumbnail_path=record.thumbnail_path,
            is_new_blob=is_new_blob,
            file_size=record.file_size,
            mime_type=record.mime_type,
            width=record.width,
            height=record.height,
            duration=record.duration,
            url=self.resolver.to_public_url(record.file_path),
            thumbnail_url=(
                self.resolver.to_public_url(record.thumbnail_path)
                if record.thumbnail_path
                else None
            ),
        )


def _extension_for(filename: str | None, mime_type: str) -> str:
    """Filename extension if it agrees with the content, else one for the MIME type."""
    if filename:
        extension = os.path.splitext(filename)[1]
        if extension and mimetypes.guess_type(filename)[0] in (None, mime_type):
            return normalize_extension(extension)
    if mime_type == DEFAULT_MIME_TYPE:
        return DEFAULT_EXTENSION
    return normalize_extension(mimetypes.guess_extension(mime_type) or DEFAULT_EXTENSION)
