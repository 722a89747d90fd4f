"""
Media processors.

Image derivatives are produced by the Pillow pipeline in
mediastore.processors.image; video dimensions and poster frames come from
FFprobe/FFmpeg in mediastore.processors.video.

Usage:
    from mediastore.processors import DerivativeProcessor, ProcessOptions

    result = DerivativeProcessor().process(src, dst, ProcessOptions(format="jpeg"))
"""

from mediastore.processors.base import (
    CodecError,
    MediaInfo,
    PermanentProcessingError,
    ProcessingError,
    ProcessResult,
    TransientProcessingError,
)
from mediastore.processors.image import (
    DerivativeProcessor,
    generate_thumbnail,
    process_image,
    read_image_info,
)
from mediastore.processors.options import ProcessOptions, Watermark
from mediastore.processors.video import extract_video_frame, probe_video

__all__ = [
    "CodecError",
    "DerivativeProcessor",
    "MediaInfo",
    "PermanentProcessingError",
    "ProcessOptions",
    "ProcessResult",
    "ProcessingError",
    "TransientProcessingError",
    "Watermark",
    "extract_video_frame",
    "generate_thumbnail",
    "probe_video",
    "process_image",
    "read_image_info",
]
