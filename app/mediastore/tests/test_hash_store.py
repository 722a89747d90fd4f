"""
Tests for HashStore record handling and reference counting.

Tests cover:
- Hashing bytes and files
- Creating records and unique-key conflicts
- Atomic increment/decrement
- Cleanup on zero, including revived records and failed deletes
- Deduplication statistics
"""

from __future__ import annotations

import hashlib
import os
from unittest.mock import patch

import pytest

from core.exceptions import NotFoundError
from mediastore.exceptions import DuplicateKeyError
from mediastore.models import FileHash


@pytest.fixture
def stored_record(hash_store, resolver):
    """A FileHash whose blob and thumbnail exist on disk."""

    def _create(content: bytes = b"hello world", ref_count: int = 1) -> FileHash:
        file_hash = hash_store.compute_hash(content)
        blob_path = resolver.blob_path(file_hash, ".txt")
        thumb_path = resolver.thumbnail_path(file_hash)
        for path, data in ((blob_path, content), (thumb_path, b"thumb")):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)

        record = hash_store.create(
            file_hash=file_hash,
            file_path=blob_path,
            file_size=len(content),
            mime_type="text/plain",
            thumbnail_path=thumb_path,
        )
        if ref_count != 1:
            FileHash.objects.filter(pk=record.pk).update(ref_count=ref_count)
            record.refresh_from_db()
        return record

    return _create


class TestComputeHash:
    """Tests for HashStore.compute_hash / compute_file_hash."""

    def test_sha256_hex(self, hash_store):
        assert hash_store.compute_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_deterministic(self, hash_store):
        assert hash_store.compute_hash(b"same") == hash_store.compute_hash(b"same")
        assert hash_store.compute_hash(b"same") != hash_store.compute_hash(b"other")

    def test_file_hash_matches_bytes_hash(self, hash_store, tmp_path):
        content = b"x" * 5000
        path = tmp_path / "data.bin"
        path.write_bytes(content)

        assert hash_store.compute_file_hash(str(path), chunk_size=1024) == (
            hash_store.compute_hash(content)
        )


@pytest.mark.django_db
class TestCreate:
    """Tests for HashStore.create."""

    def test_creates_with_single_reference(self, hash_store, stored_record):
        record = stored_record()

        assert record.ref_count == 1
        assert hash_store.find_by_hash(record.hash) == record

    def test_duplicate_hash_raises_duplicate_key_error(self, hash_store, stored_record):
        record = stored_record()

        with pytest.raises(DuplicateKeyError) as exc_info:
            hash_store.create(
                file_hash=record.hash,
                file_path=record.file_path,
                file_size=record.file_size,
                mime_type="text/plain",
            )

        assert exc_info.value.error_code == "DUPLICATE_KEY"
        # The surrounding transaction is still usable
        assert FileHash.objects.filter(hash=record.hash).count() == 1

    def test_find_by_hash_missing(self, hash_store):
        assert hash_store.find_by_hash("0" * 64) is None


@pytest.mark.django_db
class TestReferenceCounting:
    """Tests for increment_ref / decrement_ref."""

    def test_increment(self, hash_store, stored_record):
        record = stored_record()

        assert hash_store.increment_ref(record.pk) == 1
        record.refresh_from_db()
        assert record.ref_count == 2

    def test_increment_missing_raises(self, hash_store):
        with pytest.raises(NotFoundError):
            hash_store.increment_ref(999999)

    def test_increment_does_not_revive_dead_record(self, hash_store, stored_record):
        record = stored_record(ref_count=0)

        with pytest.raises(NotFoundError):
            hash_store.increment_ref(record.pk)

        record.refresh_from_db()
        assert record.ref_count == 0

    def test_decrement_returns_remaining(self, hash_store, stored_record):
        record = stored_record(ref_count=3)

        assert hash_store.decrement_ref(record.pk) == 2
        record.refresh_from_db()
        assert record.ref_count == 2

    def test_decrement_to_zero_removes_row_and_files(self, hash_store, stored_record):
        record = stored_record()

        assert hash_store.decrement_ref(record.pk) == 0

        assert not FileHash.objects.filter(pk=record.pk).exists()
        assert not os.path.exists(record.file_path)
        assert not os.path.exists(record.thumbnail_path)

    def test_decrement_missing_raises(self, hash_store):
        with pytest.raises(NotFoundError):
            hash_store.decrement_ref(999999)

    def test_uses_single_update_statement(self, hash_store, stored_record):
        """Refcount changes never read the value first."""
        record = stored_record(ref_count=2)

        with patch.object(FileHash, "save") as mock_save:
            hash_store.increment_ref(record.pk)
            hash_store.decrement_ref(record.pk)

        mock_save.assert_not_called()
        record.refresh_from_db()
        assert record.ref_count == 2


@pytest.mark.django_db
class TestCleanup:
    """Tests for HashStore.cleanup."""

    def test_skips_live_record(self, hash_store, stored_record):
        record = stored_record()

        assert hash_store.cleanup(record) is False
        assert FileHash.objects.filter(pk=record.pk).exists()
        assert os.path.exists(record.file_path)

    def test_skips_record_revived_after_decrement(self, hash_store, stored_record):
        record = stored_record(ref_count=0)
        # A concurrent ingest added a reference before cleanup ran
        FileHash.objects.filter(pk=record.pk).update(ref_count=1)

        assert hash_store.cleanup(record) is False
        assert FileHash.objects.filter(pk=record.pk).exists()

    def test_row_deleted_even_when_file_delete_fails(self, hash_store, stored_record):
        record = stored_record(ref_count=0)

        with patch("mediastore.services.blobs.os.unlink", side_effect=PermissionError("denied")):
            assert hash_store.cleanup(record) is True

        assert not FileHash.objects.filter(pk=record.pk).exists()

    def test_missing_files_are_fine(self, hash_store, stored_record):
        record = stored_record(ref_count=0)
        os.unlink(record.file_path)

        assert hash_store.cleanup(record) is True
        assert not FileHash.objects.filter(pk=record.pk).exists()

    def test_unreferenced_queryset(self, hash_store, stored_record):
        dead = stored_record(b"dead", ref_count=0)
        stored_record(b"alive")

        assert list(hash_store.unreferenced()) == [dead]


@pytest.mark.django_db
class TestStats:
    """Tests for HashStore.get_stats."""

    def test_empty(self, hash_store):
        stats = hash_store.get_stats()

        assert stats["total_unique_files"] == 0
        assert stats["total_references"] == 0
        assert stats["dedup_rate"] == 0.0

    def test_counts_duplicates_and_bytes_saved(self, hash_store, stored_record):
        stored_record(b"a" * 100, ref_count=3)
        stored_record(b"b" * 50, ref_count=1)

        stats = hash_store.get_stats()

        assert stats["total_unique_files"] == 2
        assert stats["total_references"] == 4
        assert stats["duplicates_saved"] == 2
        assert stats["bytes_stored"] == 150
        assert stats["bytes_saved"] == 200
        assert stats["dedup_rate"] == 50.0
