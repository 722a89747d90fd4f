"""
Video probing via FFprobe/FFmpeg.

The codec is treated as a black box: FFprobe reports dimensions and duration,
FFmpeg extracts a single still frame that the image pipeline then turns into
a thumbnail.

Functions:
    probe_video: Width, height, duration and codec details
    extract_video_frame: Write a representative still frame to disk
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Any

from PIL import Image, UnidentifiedImageError

from mediastore.processors.base import (
    POSTER_FRAME_POSITIONS,
    VIDEO_FRAME_TIMEOUT,
    VIDEO_METADATA_TIMEOUT,
    CodecError,
    MediaInfo,
    TransientProcessingError,
)

logger = logging.getLogger(__name__)

# Average brightness (0-1) below which a frame counts as black
BLACK_FRAME_THRESHOLD = 0.1


def probe_video(path: str) -> MediaInfo:
    """
    Read video metadata with FFprobe.

    Returns:
        MediaInfo with width, height, duration, format and extra codec
        details (codec, frame_rate, bitrate, audio_codec, has_audio).

    Raises:
        CodecError: If FFprobe cannot read the file or it has no video track.
        TransientProcessingError: On timeout or missing FFprobe binary.
    """
    cmd = [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        path,
    ]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=VIDEO_METADATA_TIMEOUT,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning(
            "FFprobe timed out",
            extra={"path": path, "timeout": VIDEO_METADATA_TIMEOUT},
        )
        raise TransientProcessingError(
            f"FFprobe timed out after {VIDEO_METADATA_TIMEOUT} seconds"
        ) from e
    except FileNotFoundError as e:
        logger.error("FFprobe not found - ensure FFmpeg is installed", extra={"path": path})
        raise TransientProcessingError("FFprobe not found - FFmpeg may not be installed") from e

    if result.returncode != 0:
        stderr = result.stderr.strip() if result.stderr else "Unknown error"
        logger.warning(
            "FFprobe failed to read video",
            extra={"path": path, "returncode": result.returncode, "stderr": stderr[:500]},
        )
        raise CodecError(f"FFprobe failed to read video: {stderr}")

    try:
        probe_data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise CodecError(f"Failed to parse video metadata: {e}") from e

    video_stream = None
    audio_stream = None
    for stream in probe_data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and video_stream is None:
            video_stream = stream
        elif codec_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        logger.warning("No video track found in file", extra={"path": path})
        raise CodecError("No video track found in file")

    format_info = probe_data.get("format", {})

    extra: dict[str, Any] = {
        "codec": video_stream.get("codec_name"),
        "has_audio": audio_stream is not None,
    }
    frame_rate = _parse_frame_rate(
        video_stream.get("r_frame_rate") or video_stream.get("avg_frame_rate")
    )
    if frame_rate is not None:
        extra["frame_rate"] = frame_rate
    bitrate = _to_number(format_info.get("bit_rate"), int)
    if bitrate is not None:
        extra["bitrate"] = bitrate
    if audio_stream:
        extra["audio_codec"] = audio_stream.get("codec_name")

    info = MediaInfo(
        width=_to_number(video_stream.get("width"), int),
        height=_to_number(video_stream.get("height"), int),
        # Format duration is more reliable than the stream's
        duration=_to_number(format_info.get("duration") or video_stream.get("duration"), float),
        format=(format_info.get("format_name") or "").split(",")[0] or None,
        extra=extra,
    )

    logger.info(
        "Probed video",
        extra={
            "path": path,
            "width": info.width,
            "height": info.height,
            "duration": info.duration,
            "codec": extra.get("codec"),
        },
    )
    return info


def extract_video_frame(
    path: str,
    output_path: str,
    duration: float | None = None,
) -> str:
    """
    Extract a representative still frame as PNG.

    Tries 10%, 25% and 50% of the duration and keeps the first frame that is
    not mostly black, falling back to the very first frame.

    Args:
        path: Source video.
        output_path: Where to write the PNG frame.
        duration: Known duration in seconds, if any.

    Returns:
        output_path.

    Raises:
        CodecError: If no frame can be extracted.
        TransientProcessingError: On timeout or missing FFmpeg binary.
    """
    if duration and duration > 0:
        positions = [duration * ratio for ratio in POSTER_FRAME_POSITIONS]
        if duration < 2:
            positions = [duration * POSTER_FRAME_POSITIONS[0]]
    else:
        positions = [0, 1, 2]

    for seek in positions:
        try:
            ok = _run_ffmpeg_frame(path, output_path, seek)
        except subprocess.TimeoutExpired:
            logger.warning(
                "FFmpeg timed out extracting frame",
                extra={"path": path, "seek": seek, "timeout": VIDEO_FRAME_TIMEOUT},
            )
            continue

        if ok and not _is_black_frame(output_path):
            return output_path
        logger.debug("No usable frame at position", extra={"path": path, "seek": seek})

    # Last resort: the first frame, even if black
    try:
        ok = _run_ffmpeg_frame(path, output_path, None)
    except subprocess.TimeoutExpired as e:
        raise TransientProcessingError(
            f"FFmpeg timed out after {VIDEO_FRAME_TIMEOUT} seconds"
        ) from e

    if not ok:
        logger.warning("Failed to extract any frame from video", extra={"path": path})
        raise CodecError("Failed to extract a frame from video")

    return output_path


def _run_ffmpeg_frame(path: str, output_path: str, seek: float | None) -> bool:
    cmd = ["ffmpeg", "-y"]
    if seek is not None:
        cmd += ["-ss", f"{seek:.3f}"]
    cmd += ["-i", path, "-vframes", "1", "-f", "image2", output_path]

    try:
        result = subprocess.run(cmd, capture_output=True, timeout=VIDEO_FRAME_TIMEOUT)
    except FileNotFoundError as e:
        logger.error("FFmpeg not found - ensure FFmpeg is installed", extra={"path": path})
        raise TransientProcessingError("FFmpeg not found - FFmpeg may not be installed") from e

    return (
        result.returncode == 0
        and os.path.exists(output_path)
        and os.path.getsize(output_path) > 0
    )


def _is_black_frame(frame_path: str, threshold: float = BLACK_FRAME_THRESHOLD) -> bool:
    """Whether the frame's average brightness is below threshold (0-1)."""
    try:
        with Image.open(frame_path) as img:
            histogram = img.convert("L").histogram()
    except (OSError, UnidentifiedImageError) as e:
        logger.debug("Could not analyze frame brightness", extra={"error": str(e)})
        return False

    total = sum(histogram)
    if not total:
        return True
    brightness = sum(value * count for value, count in enumerate(histogram)) / total
    return brightness / 255.0 < threshold


def _parse_frame_rate(value: str | None) -> float | None:
    # FFprobe reports fractions like "30000/1001"
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/")
            if int(den) == 0:
                return None
            return round(int(num) / int(den), 2)
        return float(value)
    except (ValueError, TypeError):
        return None


def _to_number(value: Any, kind: type) -> Any:
    if value in (None, ""):
        return None
    try:
        return kind(value)
    except (ValueError, TypeError):
        return None
