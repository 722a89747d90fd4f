"""
Value objects describing a requested derivative.

ProcessOptions is immutable and carries no identity; build a new instance
per call. validate() checks every numeric and enum field up front so that
bad options are rejected before the processor touches the filesystem.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import asdict, dataclass, fields
from typing import Any

from core.exceptions import ValidationError
from mediastore.processors.base import (
    DEFAULT_FIT,
    DEFAULT_FORMAT,
    DEFAULT_MAX_HEIGHT,
    DEFAULT_MAX_WIDTH,
    DEFAULT_QUALITY,
    SUPPORTED_FITS,
    SUPPORTED_FORMATS,
    WATERMARK_POSITIONS,
)


@dataclass(frozen=True)
class Watermark:
    """
    Watermark descriptor.

    Attributes:
        text: Text to draw. Ignored when image is set.
        image: Path of an image to composite.
        position: One of WATERMARK_POSITIONS.
        opacity: 0 (invisible) to 1 (opaque).
    """

    text: str | None = None
    image: str | None = None
    position: str = "bottom-right"
    opacity: float = 0.5


@dataclass(frozen=True)
class ProcessOptions:
    """
    Desired transform for DerivativeProcessor.process().

    Attributes:
        max_width: Bounding box width in pixels, > 0.
        max_height: Bounding box height in pixels, > 0.
        quality: Encoder quality knob, 1-100.
        format: Output format (webp, jpeg, png, avif).
        fit: Resize strategy (cover, contain, fill, inside, outside).
        rotate: Clockwise rotation in degrees.
        grayscale: Convert to grayscale.
        blur: Gaussian blur radius; 0 disables.
        sharpen: Apply an unsharp mask.
        watermark: Optional Watermark composited after filters.
        keep_metadata: Keep EXIF/ICC data instead of stripping it.
    """

    max_width: int = DEFAULT_MAX_WIDTH
    max_height: int = DEFAULT_MAX_HEIGHT
    quality: int = DEFAULT_QUALITY
    format: str = DEFAULT_FORMAT
    fit: str = DEFAULT_FIT
    rotate: float = 0
    grayscale: bool = False
    blur: float = 0
    sharpen: bool = False
    watermark: Watermark | None = None
    keep_metadata: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProcessOptions":
        """
        Build options from a plain dict (task payloads, JSON).

        Unknown keys are rejected so typos don't silently fall back to
        defaults.
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(
                f"Unknown process options: {', '.join(unknown)}",
                details={"unknown": unknown},
            )

        watermark = data.get("watermark")
        if isinstance(watermark, dict):
            mark_fields = {f.name for f in fields(Watermark)}
            unknown = sorted(set(watermark) - mark_fields)
            if unknown:
                raise ValidationError(
                    f"Unknown watermark options: {', '.join(unknown)}",
                    details={"unknown": unknown},
                )
            data["watermark"] = Watermark(**watermark)

        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        """
        Check every field, raising one ValidationError listing all problems.

        Raises:
            ValidationError: With details mapping field name to messages.
        """
        errors: dict[str, list[str]] = {}

        if not _is_number(self.max_width) or self.max_width <= 0:
            errors.setdefault("max_width", []).append("must be greater than 0")
        if not _is_number(self.max_height) or self.max_height <= 0:
            errors.setdefault("max_height", []).append("must be greater than 0")
        if not _is_number(self.quality) or not 1 <= self.quality <= 100:
            errors.setdefault("quality", []).append("must be between 1 and 100")
        if self.format not in SUPPORTED_FORMATS:
            errors.setdefault("format", []).append(
                f"must be one of {', '.join(SUPPORTED_FORMATS)}"
            )
        if self.fit not in SUPPORTED_FITS:
            errors.setdefault("fit", []).append(
                f"must be one of {', '.join(SUPPORTED_FITS)}"
            )
        if not _is_number(self.rotate):
            errors.setdefault("rotate", []).append("must be a finite number")
        if not _is_number(self.blur) or self.blur < 0:
            errors.setdefault("blur", []).append("must be 0 or greater")

        if self.watermark is not None:
            mark = self.watermark
            if not mark.text and not mark.image:
                errors.setdefault("watermark", []).append("needs text or image")
            if mark.position not in WATERMARK_POSITIONS:
                errors.setdefault("watermark", []).append(
                    f"position must be one of {', '.join(WATERMARK_POSITIONS)}"
                )
            if not _is_number(mark.opacity) or not 0 <= mark.opacity <= 1:
                errors.setdefault("watermark", []).append(
                    "opacity must be between 0 and 1"
                )

        if errors:
            summary = "; ".join(
                f"{name} {message}" for name, messages in errors.items() for message in messages
            )
            raise ValidationError(f"Invalid process options: {summary}", details=errors)


def _is_number(value: Any) -> bool:
    """Real, finite and not a bool."""
    return (
        isinstance(value, numbers.Real)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
