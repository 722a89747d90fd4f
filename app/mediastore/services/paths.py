"""
Content-addressed storage path layout.

Maps a content hash to its canonical location:

    <root>/hashes/<h[0:2]>/<h[2:4]>/<hash><ext>
    <root>/thumbnails/<h[0:2]>/<h[2:4]>/<hash>_thumb.webp

Bucketing by the first two hex pairs bounds fanout to 256 x 256
subdirectories. Everything here is pure string manipulation: no filesystem
access, fully deterministic.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from django.conf import settings

from core.exceptions import ValidationError

HASHES_DIR = "hashes"
THUMBNAILS_DIR = "thumbnails"
THUMBNAIL_SUFFIX = "_thumb.webp"

_HASH_RE = re.compile(r"^[0-9a-f]{4,}$")


class StoragePathResolver:
    """
    Resolve canonical blob/thumbnail paths for a content hash.

    Args:
        root: Storage root. Defaults to settings.MEDIASTORE_ROOT.
        url_prefix: Public URL prefix. Defaults to settings.MEDIASTORE_URL.

    Example:
        >>> resolver = StoragePathResolver(root="/srv/media")
        >>> resolver.blob_path("abcdef12", ".JPG")
        '/srv/media/hashes/ab/cd/abcdef12.jpg'
        >>> resolver.thumbnail_path("abcdef12")
        '/srv/media/thumbnails/ab/cd/abcdef12_thumb.webp'
    """

    def __init__(
        self,
        root: str | os.PathLike | None = None,
        url_prefix: str | None = None,
    ) -> None:
        self.root = str(root if root is not None else settings.MEDIASTORE_ROOT)
        self.url_prefix = url_prefix if url_prefix is not None else settings.MEDIASTORE_URL

    @property
    def hashes_root(self) -> str:
        return os.path.join(self.root, HASHES_DIR)

    @property
    def thumbnails_root(self) -> str:
        return os.path.join(self.root, THUMBNAILS_DIR)

    def blob_path(self, file_hash: str, extension: str) -> str:
        """Canonical path of the blob for file_hash."""
        file_hash = self._validate_hash(file_hash)
        return os.path.join(
            self.hashes_root,
            *self.bucket(file_hash),
            f"{file_hash}{normalize_extension(extension)}",
        )

    def thumbnail_path(self, file_hash: str) -> str:
        """Canonical path of the thumbnail for file_hash."""
        file_hash = self._validate_hash(file_hash)
        return os.path.join(
            self.thumbnails_root,
            *self.bucket(file_hash),
            f"{file_hash}{THUMBNAIL_SUFFIX}",
        )

    def bucket(self, file_hash: str) -> tuple[str, str]:
        """Two-level fanout directories for file_hash."""
        return file_hash[0:2], file_hash[2:4]

    def to_public_url(self, path: str | os.PathLike) -> str:
        """
        Convert a stored path into its public URL.

        The storage root prefix is stripped and separators normalized to
        forward slashes. Paths already relative to the root are accepted.

        Example:
            >>> StoragePathResolver("/srv/media", "/media/").to_public_url(
            ...     "/srv/media/hashes/ab/cd/abcd.jpg"
            ... )
            '/media/hashes/ab/cd/abcd.jpg'
        """
        path_str = str(path).replace("\\", "/")
        root = self.root.replace("\\", "/").rstrip("/")

        if root and (path_str == root or path_str.startswith(root + "/")):
            path_str = path_str[len(root):]

        relative = path_str.lstrip("/")
        prefix = self.url_prefix.rstrip("/")
        return f"{prefix}/{relative}"

    def hash_from_path(self, path: str | os.PathLike) -> str | None:
        """
        Recover the content hash from a blob or thumbnail filename.

        Returns:
            The hash, or None if the name does not follow the layout.
        """
        name = Path(path).name
        if name.endswith(THUMBNAIL_SUFFIX):
            candidate = name[: -len(THUMBNAIL_SUFFIX)]
        else:
            candidate = name.split(".", 1)[0]
        return candidate if _HASH_RE.match(candidate) else None

    @staticmethod
    def _validate_hash(file_hash: str) -> str:
        if not isinstance(file_hash, str) or not _HASH_RE.match(file_hash):
            raise ValidationError(
                "Hash must be a lowercase hex string of at least 4 characters",
                error_code="INVALID_HASH",
                details={"hash": file_hash},
            )
        return file_hash


def normalize_extension(extension: str | None) -> str:
    """
    Normalize a file extension to lowercase with a leading dot.

    >>> normalize_extension("JPG")
    '.jpg'
    >>> normalize_extension("")
    ''
    """
    if not extension:
        return ""
    extension = extension.strip().lower()
    if not extension.startswith("."):
        extension = f".{extension}"
    return extension
