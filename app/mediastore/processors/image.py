"""
Image derivative pipeline built on Pillow.

Every derivative runs the same fixed sequence of steps:

    resize -> rotate -> grayscale -> blur -> sharpen -> watermark
           -> metadata keep/strip -> encode

Resizing never upscales: the target box is clamped to the source size
before any fit strategy is applied. Output is encoded into a temporary file
beside the destination and renamed into place, so a failed encode never
leaves a partial derivative behind and never touches the source.

Classes:
    DerivativeProcessor: Stateless processor with a bounded worker pool
        for async callers.

Functions:
    process_image: One-shot DerivativeProcessor().process()
    generate_thumbnail: One-shot thumbnail preset
    read_image_info: Width, height and format of an image file
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from django.conf import settings
from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps, UnidentifiedImageError

from core.exceptions import ValidationError
from mediastore.processors.base import (
    THUMBNAIL_FIT,
    THUMBNAIL_FORMAT,
    THUMBNAIL_QUALITY,
    THUMBNAIL_SIZE,
    CodecError,
    MediaInfo,
    ProcessResult,
)
from mediastore.processors.options import ProcessOptions, Watermark
from mediastore.services.blobs import atomic_output_path

logger = logging.getLogger(__name__)

# Pillow save() format names
PIL_FORMATS = {
    "webp": "WEBP",
    "jpeg": "JPEG",
    "png": "PNG",
    "avif": "AVIF",
}

# Gap between a watermark and the image edge, in pixels
WATERMARK_MARGIN = 10

# A watermark image is scaled down to at most this share of the base width
WATERMARK_MAX_WIDTH_RATIO = 0.25

THUMBNAIL_OPTIONS = ProcessOptions(
    max_width=THUMBNAIL_SIZE[0],
    max_height=THUMBNAIL_SIZE[1],
    quality=THUMBNAIL_QUALITY,
    format=THUMBNAIL_FORMAT,
    fit=THUMBNAIL_FIT,
)


class DerivativeProcessor:
    """
    Produce resized/reformatted copies and thumbnails of stored images.

    process() and generate_thumbnail() are synchronous and never raise for
    expected failures; they return a ProcessResult instead. The *_async
    variants run the same work on a bounded thread pool so the event loop
    is never blocked by decoding or encoding.

    Args:
        max_workers: Pool size. Defaults to settings.MEDIASTORE_DERIVATIVE_WORKERS.

    Example:
        >>> processor = DerivativeProcessor()
        >>> result = processor.process("in.jpg", "out.webp", ProcessOptions(max_width=800))
        >>> result.success, result.width
        (True, 800)
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self.max_workers = max_workers or settings.MEDIASTORE_DERIVATIVE_WORKERS
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # =========================================================================
    # Synchronous API
    # =========================================================================

    def process(
        self,
        input_path: str,
        output_path: str,
        options: ProcessOptions | None = None,
    ) -> ProcessResult:
        """
        Run the derivative pipeline for one image.

        Options are validated before the filesystem is touched.

        Returns:
            ProcessResult. On failure error_code is one of VALIDATION_ERROR,
            NOT_FOUND, CODEC_ERROR or IO_ERROR.
        """
        options = options or ProcessOptions()

        try:
            options.validate()
        except ValidationError as e:
            return ProcessResult.fail(e.message, e.error_code)

        if not os.path.isfile(input_path):
            logger.warning("Source image not found", extra={"input_path": input_path})
            return ProcessResult.fail(f"Source image not found: {input_path}", "NOT_FOUND")

        try:
            original_size = os.path.getsize(input_path)

            with Image.open(input_path) as source:
                # Force a full decode so truncated files fail here
                source.load()
                metadata = _collect_metadata(source) if options.keep_metadata else {}
                img = self._transform(source, options)

            with atomic_output_path(output_path) as tmp_path:
                _encode(img, tmp_path, options, metadata)

            with Image.open(output_path) as written:
                width, height = written.size
                output_format = (written.format or options.format).lower()
            size = os.path.getsize(output_path)

        except Image.DecompressionBombError as e:
            logger.warning(
                "Image exceeds size limit",
                extra={"input_path": input_path, "error": str(e)},
            )
            return ProcessResult.fail(f"Image exceeds maximum size limit: {e}", CodecError.error_code)

        except UnidentifiedImageError as e:
            logger.warning(
                "Cannot identify image format",
                extra={"input_path": input_path, "error": str(e)},
            )
            return ProcessResult.fail(
                f"Cannot identify image format - file may be corrupted: {e}",
                CodecError.error_code,
            )

        except CodecError as e:
            logger.warning(
                "Codec rejected image",
                extra={"input_path": input_path, "format": options.format, "error": str(e)},
            )
            return ProcessResult.fail(str(e), CodecError.error_code)

        except OSError as e:
            error_str = str(e).lower()
            if "truncated" in error_str or "cannot identify" in error_str or "broken data" in error_str:
                logger.warning(
                    "Image file is truncated or corrupted",
                    extra={"input_path": input_path, "error": str(e)},
                )
                return ProcessResult.fail(
                    f"Image file is truncated or corrupted: {e}",
                    CodecError.error_code,
                )

            logger.error(
                "I/O error during derivative generation",
                extra={"input_path": input_path, "output_path": output_path, "error": str(e)},
            )
            return ProcessResult.fail(f"I/O error: {e}", "IO_ERROR")

        except (ValueError, SyntaxError) as e:
            # Pillow raises these for malformed headers and encoder parameter issues
            logger.warning(
                "Image could not be decoded or encoded",
                extra={"input_path": input_path, "error": str(e)},
            )
            return ProcessResult.fail(f"Image could not be processed: {e}", CodecError.error_code)

        logger.info(
            "Generated derivative",
            extra={
                "input_path": input_path,
                "output_path": output_path,
                "size": f"{width}x{height}",
                "format": output_format,
                "file_size": size,
            },
        )

        return ProcessResult.ok(
            path=output_path,
            width=width,
            height=height,
            format=output_format,
            size=size,
            original_size=original_size,
            metadata=metadata or None,
        )

    def generate_thumbnail(self, input_path: str, output_path: str) -> ProcessResult:
        """Thumbnail preset: 300x300 cover crop, WebP quality 70."""
        return self.process(input_path, output_path, THUMBNAIL_OPTIONS)

    # =========================================================================
    # Async API
    # =========================================================================

    async def process_async(
        self,
        input_path: str,
        output_path: str,
        options: ProcessOptions | None = None,
    ) -> ProcessResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._get_executor(),
            functools.partial(self.process, input_path, output_path, options),
        )

    async def generate_thumbnail_async(self, input_path: str, output_path: str) -> ProcessResult:
        return await self.process_async(input_path, output_path, THUMBNAIL_OPTIONS)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool. A later async call starts a new one."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="derivative",
                )
            return self._executor

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _transform(self, img: Image.Image, options: ProcessOptions) -> Image.Image:
        img = _normalize_mode(img)
        img = _resize(img, int(options.max_width), int(options.max_height), options.fit)

        if options.rotate % 360:
            # Pillow rotates counter-clockwise
            img = img.rotate(-options.rotate, resample=Image.Resampling.BICUBIC, expand=True)

        if options.grayscale:
            img = img.convert("LA" if _has_alpha(img) else "L")

        if options.blur > 0:
            img = img.filter(ImageFilter.GaussianBlur(radius=options.blur))

        if options.sharpen:
            img = img.filter(ImageFilter.UnsharpMask())

        if options.watermark is not None:
            img = _apply_watermark(img, options.watermark)

        return img


# =============================================================================
# Pipeline steps
# =============================================================================


def _resize(img: Image.Image, max_width: int, max_height: int, fit: str) -> Image.Image:
    """
    Resize according to the fit strategy without upscaling.

    inside: largest size fitting within the box, aspect preserved.
    outside: smallest size covering the box, aspect preserved.
    cover: scale and center-crop to the box.
    contain: scale to fit and pad to the box.
    fill: stretch to the box.
    """
    width, height = img.size
    box = (min(max_width, width), min(max_height, height))

    if fit == "inside":
        scale = min(max_width / width, max_height / height, 1.0)
        return _scale(img, scale)

    if fit == "outside":
        scale = min(max(max_width / width, max_height / height), 1.0)
        return _scale(img, scale)

    if box == img.size:
        return img

    if fit == "cover":
        return ImageOps.fit(img, box, method=Image.Resampling.LANCZOS)

    if fit == "contain":
        color = (0, 0, 0, 0) if _has_alpha(img) else None
        return ImageOps.pad(img, box, method=Image.Resampling.LANCZOS, color=color)

    # fill
    return img.resize(box, Image.Resampling.LANCZOS)


def _scale(img: Image.Image, scale: float) -> Image.Image:
    if scale >= 1.0:
        return img
    width, height = img.size
    size = (max(1, round(width * scale)), max(1, round(height * scale)))
    return img.resize(size, Image.Resampling.LANCZOS)


def _apply_watermark(img: Image.Image, mark: Watermark) -> Image.Image:
    """
    Composite a text or image watermark.

    A watermark that cannot be loaded or drawn is skipped with a warning;
    the derivative is still produced.
    """
    original_mode = img.mode
    base = img.convert("RGBA")

    try:
        if mark.image:
            with Image.open(mark.image) as source:
                overlay_mark = source.convert("RGBA")
            max_width = max(1, int(base.width * WATERMARK_MAX_WIDTH_RATIO))
            if overlay_mark.width > max_width:
                ratio = max_width / overlay_mark.width
                overlay_mark = overlay_mark.resize(
                    (max_width, max(1, round(overlay_mark.height * ratio))),
                    Image.Resampling.LANCZOS,
                )
            alpha = overlay_mark.getchannel("A").point(lambda a: round(a * mark.opacity))
            overlay_mark.putalpha(alpha)

            layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
            layer.paste(overlay_mark, _anchor(base.size, overlay_mark.size, mark.position))
        else:
            layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
            draw = ImageDraw.Draw(layer)
            font = ImageFont.load_default()
            left, top, right, bottom = draw.textbbox((0, 0), mark.text, font=font)
            position = _anchor(base.size, (right - left, bottom - top), mark.position)
            draw.text(
                (position[0] - left, position[1] - top),
                mark.text,
                font=font,
                fill=(255, 255, 255, round(255 * mark.opacity)),
            )
    except (OSError, ValueError) as e:
        logger.warning(
            "Skipping watermark",
            extra={"watermark_image": mark.image, "error": str(e)},
        )
        return img

    composed = Image.alpha_composite(base, layer)
    if original_mode in ("RGB", "L"):
        return composed.convert(original_mode)
    return composed


def _anchor(
    base_size: tuple[int, int],
    mark_size: tuple[int, int],
    position: str,
) -> tuple[int, int]:
    base_w, base_h = base_size
    mark_w, mark_h = mark_size

    if position == "center":
        return (base_w - mark_w) // 2, (base_h - mark_h) // 2

    vertical, horizontal = position.split("-")
    x = WATERMARK_MARGIN if horizontal == "left" else base_w - mark_w - WATERMARK_MARGIN
    y = WATERMARK_MARGIN if vertical == "top" else base_h - mark_h - WATERMARK_MARGIN
    return max(0, x), max(0, y)


def _collect_metadata(img: Image.Image) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    exif = img.info.get("exif")
    if exif:
        metadata["exif"] = exif
    icc_profile = img.info.get("icc_profile")
    if icc_profile:
        metadata["icc_profile"] = icc_profile
    return metadata


# =============================================================================
# Encoding
# =============================================================================


def _encode(
    img: Image.Image,
    path: str,
    options: ProcessOptions,
    metadata: dict[str, Any],
) -> None:
    """Encode img to path in the requested format."""
    fmt = options.format
    quality = int(options.quality)
    params: dict[str, Any] = dict(metadata)

    if fmt == "jpeg":
        img = _convert_to_rgb(img)
        params.update(quality=quality, progressive=True, optimize=True)

    elif fmt == "png":
        if quality < 100:
            img = _quantize(img, quality)
        params.update(compress_level=9)

    elif fmt == "webp":
        img = _to_rgb_or_rgba(img)
        params.update(quality=quality, lossless=quality == 100)

    elif fmt == "avif":
        if not avif_supported():
            raise CodecError("AVIF encoding is not supported by the installed Pillow build")
        img = _to_rgb_or_rgba(img)
        params.update(quality=quality)

    img.save(path, format=PIL_FORMATS[fmt], **params)


def avif_supported() -> bool:
    """Whether the installed Pillow can write AVIF."""
    Image.init()
    return "AVIF" in Image.SAVE


def _quantize(img: Image.Image, quality: int) -> Image.Image:
    """Reduce to an adaptive palette sized from the quality knob."""
    colors = max(2, min(256, round(256 * quality / 100)))
    img = _to_rgb_or_rgba(img)
    method = Image.Quantize.FASTOCTREE if img.mode == "RGBA" else Image.Quantize.MEDIANCUT
    return img.quantize(colors=colors, method=method)


def _normalize_mode(img: Image.Image) -> Image.Image:
    """Bring exotic modes (P, 1, I, CMYK...) into one the filters accept."""
    if img.mode in ("RGB", "RGBA", "L", "LA"):
        return img
    if img.mode == "P" and "transparency" in img.info:
        return img.convert("RGBA")
    if img.mode == "PA":
        return img.convert("RGBA")
    return img.convert("RGB")


def _to_rgb_or_rgba(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    return img.convert("RGBA" if _has_alpha(img) else "RGB")


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info


def _convert_to_rgb(img: Image.Image) -> Image.Image:
    """
    Convert image to RGB mode for JPEG output.

    Handles various color modes:
    - RGBA/LA: Composites onto white background
    - P (palette): Flattens transparency onto white, else converts
    - Other: Converts directly to RGB
    """
    if img.mode == "RGB":
        return img

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background

    return img.convert("RGB")


# =============================================================================
# Inspection
# =============================================================================


def read_image_info(path: str) -> MediaInfo:
    """
    Read dimensions and format without decoding pixel data.

    Raises:
        CodecError: If the file is not a readable image.
        OSError: For I/O failures (missing file, permissions).
    """
    try:
        with Image.open(path) as img:
            width, height = img.size
            return MediaInfo(
                width=width,
                height=height,
                format=(img.format or "unknown").lower(),
                extra={"mode": img.mode, "has_alpha": _has_alpha(img)},
            )
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise CodecError(f"Cannot read image: {e}") from e


# =============================================================================
# Convenience functions
# =============================================================================


def process_image(
    input_path: str,
    output_path: str,
    options: ProcessOptions | None = None,
) -> ProcessResult:
    return DerivativeProcessor().process(input_path, output_path, options)


def generate_thumbnail(input_path: str, output_path: str) -> ProcessResult:
    return DerivativeProcessor().generate_thumbnail(input_path, output_path)
