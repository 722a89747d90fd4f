"""
Filesystem helpers for blobs and derivatives.

Writers never expose a partially written file: content goes to a temporary
file in the destination directory and is moved into place with os.replace(),
which is atomic on the same filesystem. Deletions are best-effort and only
log on failure.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from typing import TYPE_CHECKING

from mediastore.exceptions import StorageIOError

if TYPE_CHECKING:
    from collections.abc import Generator

logger = logging.getLogger(__name__)


@contextmanager
def atomic_output_path(path: str) -> Generator[str, None, None]:
    """
    Yield a temporary path that is renamed onto `path` on success.

    The parent directory is created recursively. If the body raises, the
    temporary file is removed and `path` is left untouched.

    Example:
        with atomic_output_path("/srv/media/thumbnails/ab/cd/x_thumb.webp") as tmp:
            img.save(tmp, format="WEBP")
    """
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=directory,
        prefix=".tmp-",
        suffix=os.path.splitext(path)[1],
    )
    os.close(fd)

    try:
        yield tmp_path
        os.replace(tmp_path, path)
    except BaseException:
        _discard(tmp_path)
        raise


def write_blob(path: str, data: bytes) -> bool:
    """
    Write `data` to `path` atomically unless the blob is already in place.

    Content-addressed paths are derived from the content, so an existing
    file at `path` already holds these bytes. Its mtime is refreshed so the
    orphan sweep treats it as in flight again.

    Returns:
        True if this call wrote the blob, False if it already existed.

    Raises:
        StorageIOError: If the directory or file cannot be written.
    """
    try:
        os.utime(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise StorageIOError(
            f"Failed to refresh blob: {e}",
            details={"path": path},
        ) from e
    else:
        logger.debug("Blob already present, skipping write", extra={"path": path})
        return False

    try:
        with atomic_output_path(path) as tmp_path:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
    except OSError as e:
        logger.error(
            "Failed to write blob",
            extra={"path": path, "error": str(e)},
        )
        raise StorageIOError(
            f"Failed to write blob: {e}",
            details={"path": path},
        ) from e

    logger.info(
        "Wrote blob",
        extra={"path": path, "file_size": len(data)},
    )
    return True


def remove_file(path: str | None) -> bool:
    """
    Best-effort delete of a stored file.

    Missing files count as removed. Other failures are logged as warnings
    and never raised.

    Returns:
        True if the file is gone afterwards, False if deletion failed.
    """
    if not path:
        return True

    try:
        os.unlink(path)
    except FileNotFoundError:
        logger.debug("File already absent", extra={"path": path})
        return True
    except OSError as e:
        logger.warning(
            "Failed to delete file",
            extra={"path": path, "error": str(e)},
        )
        return False

    logger.info("Deleted file", extra={"path": path})
    return True


def _discard(tmp_path: str) -> None:
    try:
        os.unlink(tmp_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(
            "Failed to remove temporary file",
            extra={"path": tmp_path, "error": str(e)},
        )
