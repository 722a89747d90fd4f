"""
Base module for media processors.

Provides shared exceptions, result types and constants used by the image
derivative pipeline and the video probe.

Exception Hierarchy:
    ProcessingError (base)
    ├── PermanentProcessingError (don't retry - corrupted, unsupported)
    │   └── CodecError (unreadable/corrupt input or unsupported encoder)
    └── TransientProcessingError (retry - timeout, missing binary)

Usage:
    from mediastore.processors.base import CodecError, ProcessResult

    result = processor.process(src, dst, options)
    if not result.success:
        logger.warning("Derivative failed", extra={"error": result.error})
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

# =============================================================================
# Constants
# =============================================================================

# Thumbnail preset: cover-fit into 300x300, WebP at quality 70
THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_QUALITY = 70
THUMBNAIL_FORMAT = "webp"
THUMBNAIL_FIT = "cover"

# Defaults applied when ProcessOptions fields are not given
DEFAULT_MAX_WIDTH = 1920
DEFAULT_MAX_HEIGHT = 1080
DEFAULT_QUALITY = 80
DEFAULT_FORMAT = "webp"
DEFAULT_FIT = "inside"

SUPPORTED_FORMATS = ("webp", "jpeg", "png", "avif")
SUPPORTED_FITS = ("cover", "contain", "fill", "inside", "outside")
WATERMARK_POSITIONS = ("top-left", "top-right", "bottom-left", "bottom-right", "center")

# Video-specific timeouts (seconds)
VIDEO_METADATA_TIMEOUT = 60
VIDEO_FRAME_TIMEOUT = 120

# Poster frame candidates as fractions of the duration
POSTER_FRAME_POSITIONS = [0.1, 0.25, 0.5]


# =============================================================================
# Exceptions
# =============================================================================


class ProcessingError(Exception):
    """
    Base exception for all media processing errors.

    Catching this class will catch all processing-related exceptions.
    """

    error_code = "PROCESSING_ERROR"


class PermanentProcessingError(ProcessingError):
    """
    Error that should not be retried.

    Raised for corrupted or invalid content, unsupported formats and files
    exceeding decoder limits.
    """

    pass


class CodecError(PermanentProcessingError):
    """
    Raised when the codec cannot decode the input or encode the output.

    The source file is never modified when this is raised.
    """

    error_code = "CODEC_ERROR"


class TransientProcessingError(ProcessingError):
    """
    Error that may succeed on retry.

    Raised for FFmpeg/FFprobe timeouts or missing binaries.
    """

    error_code = "TRANSIENT_PROCESSING_ERROR"


# =============================================================================
# Result Classes
# =============================================================================


@dataclass
class ProcessResult:
    """
    Result of a derivative operation.

    Processing never raises for expected failures; callers inspect
    `success` and continue with the next item.

    Attributes:
        success: Whether the derivative was written.
        path: Output path on success.
        width: Output width in pixels.
        height: Output height in pixels.
        format: Output format as reported by the decoder (e.g. "webp").
        size: Output size in bytes.
        original_size: Source size in bytes.
        metadata: Source metadata kept in the output (keep_metadata only).
        error: Error message on failure.
        error_code: VALIDATION_ERROR, NOT_FOUND, CODEC_ERROR or IO_ERROR.

    Example:
        >>> result = generate_thumbnail("in.jpg", "out.webp")
        >>> if result.success:
        ...     print(result.width, result.height)
    """

    success: bool
    path: str | None = None
    width: int | None = None
    height: int | None = None
    format: str | None = None
    size: int | None = None
    original_size: int | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(
        cls,
        path: str,
        width: int,
        height: int,
        format: str,
        size: int,
        original_size: int,
        metadata: dict[str, Any] | None = None,
    ) -> "ProcessResult":
        """Create a successful result."""
        return cls(
            success=True,
            path=path,
            width=width,
            height=height,
            format=format,
            size=size,
            original_size=original_size,
            metadata=metadata,
        )

    @classmethod
    def fail(cls, error: str, error_code: str) -> "ProcessResult":
        """Create a failed result."""
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> dict[str, Any]:
        """Return the result as a JSON-serializable dict without empty keys."""
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class MediaInfo:
    """
    Dimensions and timing read from a stored blob.

    Attributes:
        width: Pixel width, if visual.
        height: Pixel height, if visual.
        duration: Seconds, for video.
        format: Container/image format name.
        extra: Codec details (frame rate, codecs, bitrate).
    """

    width: int | None = None
    height: int | None = None
    duration: float | None = None
    format: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
