"""
Media store models.

Models:
    FileHash: Content-addressed blob record with a reference count
"""

from mediastore.models.file_hash import FileHash

__all__ = ["FileHash"]
