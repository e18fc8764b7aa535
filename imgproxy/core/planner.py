"""
Transform planning.

Pure functions only: given what the caller asked for and what the image
actually is, decide what the pipeline will do.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import Settings
from .params import OutputFormat, TransformRequest

# Fixed per-format encoder tuning, speed over size
ENCODE_TUNING: Dict[OutputFormat, Dict[str, Any]] = {
    # libjpeg fast path: no huffman optimisation, baseline scans
    OutputFormat.JPEG: {"optimize": False, "progressive": False},
    OutputFormat.WEBP: {"method": 0, "lossless": False, "alpha_quality": 80},
    OutputFormat.PNG: {"compress_level": 1, "optimize": False},
    OutputFormat.AVIF: {"speed": 8},
}

# Formats whose encoder takes a quality setting
QUALITY_FORMATS = {OutputFormat.JPEG, OutputFormat.WEBP, OutputFormat.AVIF}


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: Optional[str] = None


@dataclass(frozen=True)
class ResizeTarget:
    width: int
    height: int
    fit: str = "inside"
    kernel: str = "lanczos3"


@dataclass(frozen=True)
class TransformPlan:
    output_format: OutputFormat
    quality: int
    resize: Optional[ResizeTarget] = None
    grayscale: bool = False
    encode_options: Dict[str, Any] = field(default_factory=dict)

    @property
    def resize_applied(self) -> bool:
        return self.resize is not None


def fit_inside(width: int, height: int, box_width: int, box_height: int) -> tuple[int, int]:
    """Scale (width, height) into the box, keeping aspect ratio and never enlarging."""
    scale = min(box_width / width, box_height / height, 1.0)
    new_width = max(1, min(box_width, round(width * scale)))
    new_height = max(1, min(box_height, round(height * scale)))
    return new_width, new_height


def plan_resize(
    request: TransformRequest,
    metadata: ImageMetadata,
    settings: Settings,
) -> Optional[ResizeTarget]:
    oversized = metadata.width > settings.MAX_WIDTH or metadata.height > settings.MAX_HEIGHT
    requested = request.width is not None or request.height is not None
    if not (oversized or requested):
        return None

    box_width = min(request.width or settings.MAX_WIDTH, settings.MAX_WIDTH)
    box_height = min(request.height or settings.MAX_HEIGHT, settings.MAX_HEIGHT)
    width, height = fit_inside(metadata.width, metadata.height, box_width, box_height)
    if (width, height) == (metadata.width, metadata.height):
        # Target at or above the original size: nothing to do
        return None
    return ResizeTarget(width=width, height=height)


def negotiate_format(
    request: TransformRequest,
    settings: Settings,
    accept: Optional[str] = None,
) -> OutputFormat:
    if request.format is not None:
        return request.format
    if accept and "image/webp" in accept.lower():
        return OutputFormat.WEBP
    return OutputFormat.parse(settings.DEFAULT_FORMAT)


def encode_options(output_format: OutputFormat, quality: int) -> Dict[str, Any]:
    options = dict(ENCODE_TUNING[output_format])
    if output_format in QUALITY_FORMATS:
        options["quality"] = quality
    return options


def plan_transform(
    request: TransformRequest,
    metadata: ImageMetadata,
    settings: Settings,
    accept: Optional[str] = None,
) -> TransformPlan:
    """Build the single plan used for this request's encode pass."""
    output_format = negotiate_format(request, settings, accept)
    return TransformPlan(
        output_format=output_format,
        quality=request.quality,
        resize=plan_resize(request, metadata, settings),
        grayscale=request.grayscale,
        encode_options=encode_options(output_format, request.quality),
    )
