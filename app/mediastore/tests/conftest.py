"""
Test fixtures for the mediastore app.

Provides fixtures for:
- An isolated storage root per test
- Service instances wired to that root
- Sample images as bytes and on disk
- Media headers for content detection
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

from mediastore.processors.image import DerivativeProcessor
from mediastore.services.hash_store import HashStore
from mediastore.services.ingest import IngestService
from mediastore.services.paths import StoragePathResolver

if TYPE_CHECKING:
    from pathlib import Path


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def storage_root(tmp_path, settings) -> "Path":
    """Point MEDIASTORE_ROOT at a fresh temporary directory."""
    root = tmp_path / "media"
    root.mkdir()
    settings.MEDIASTORE_ROOT = root
    settings.MEDIASTORE_URL = "/media/"
    return root


@pytest.fixture
def resolver(storage_root) -> StoragePathResolver:
    return StoragePathResolver(root=storage_root, url_prefix="/media/")


@pytest.fixture
def hash_store() -> HashStore:
    return HashStore()


@pytest.fixture
def processor():
    processor = DerivativeProcessor(max_workers=2)
    yield processor
    processor.shutdown()


@pytest.fixture
def ingest_service(hash_store, resolver, processor) -> IngestService:
    """IngestService on the temporary root with no retry delay."""
    return IngestService(
        hash_store=hash_store,
        resolver=resolver,
        processor=processor,
        max_attempts=3,
        retry_backoff=0,
    )


# =============================================================================
# Image Fixtures
# =============================================================================


def make_image_bytes(
    size: tuple[int, int] = (100, 100),
    color="red",
    mode: str = "RGB",
    format: str = "JPEG",
) -> bytes:
    """Encode a solid-color image."""
    image = Image.new(mode, size, color=color)
    buffer = io.BytesIO()
    image.save(buffer, format=format)
    return buffer.getvalue()


@pytest.fixture
def sample_jpeg_bytes() -> bytes:
    """A 640x480 JPEG."""
    return make_image_bytes((640, 480), color="red")


@pytest.fixture
def sample_png_bytes() -> bytes:
    """A 120x80 PNG with transparency."""
    return make_image_bytes((120, 80), color=(0, 0, 255, 128), mode="RGBA", format="PNG")


@pytest.fixture
def image_on_disk(tmp_path):
    """Factory writing an image under tmp_path and returning its path."""

    def _write(
        name: str = "source.jpg",
        size: tuple[int, int] = (800, 600),
        color="blue",
        mode: str = "RGB",
        format: str = "JPEG",
    ) -> str:
        path = tmp_path / "sources" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(make_image_bytes(size, color=color, mode=mode, format=format))
        return str(path)

    return _write


@pytest.fixture
def image_bytes():
    """Factory returning encoded image bytes (see make_image_bytes)."""
    return make_image_bytes


# =============================================================================
# Content Fixtures
# =============================================================================


@pytest.fixture
def mp4_header_bytes() -> bytes:
    """An ISO base media header that libmagic identifies as video/mp4."""
    return b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom" + b"\x00" * 512


@pytest.fixture
def corrupt_jpeg_bytes() -> bytes:
    """A JFIF signature followed by garbage: detected as JPEG, undecodable."""
    return b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00" + b"\x9a" * 256
