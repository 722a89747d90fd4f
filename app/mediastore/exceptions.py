"""
Media store exceptions.

Exception Hierarchy:
    BaseApplicationError (core)
    ├── ConflictError (core)
    │   └── DuplicateKeyError - concurrent first-writer race on a hash
    └── StorageIOError - disk failures while writing blobs

Codec failures live with the processors (mediastore.processors.base.CodecError)
because they belong to the processing error hierarchy.
"""

from __future__ import annotations

from core.exceptions import BaseApplicationError, ConflictError


class DuplicateKeyError(ConflictError):
    """
    Raised when creating a FileHash whose hash already exists.

    Recovered internally by the ingest loop (re-fetch and increment); never
    surfaced to ingest callers.
    """

    default_error_code: str = "DUPLICATE_KEY"


class StorageIOError(BaseApplicationError):
    """
    Raised when a blob or derivative cannot be written to disk.

    Write failures before the FileHash row exists abort the ingest with no
    row created.
    """

    default_error_code: str = "IO_ERROR"
