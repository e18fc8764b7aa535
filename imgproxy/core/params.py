"""
Query parameter parsing.

Turns the loosely typed query string into a TransformRequest. Anything that
gets past this module is already within the configured bounds.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Mapping, Optional

from .config import Settings
from .errors import InvalidDimension, InvalidQuality, MissingURL, UnsupportedFormat
from .url_sanitizer import sanitize_url

_INT_RE = re.compile(r"^[+]?[0-9]+$")


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    AVIF = "avif"

    @property
    def media_type(self) -> str:
        return f"image/{self.value}"

    @classmethod
    def parse(cls, value: str) -> "OutputFormat":
        normalized = (value or "").strip().lower()
        if normalized == "jpg":
            normalized = "jpeg"
        try:
            return cls(normalized)
        except ValueError:
            supported = ", ".join(fmt.value for fmt in cls)
            raise UnsupportedFormat(
                f"Unsupported format '{value}'. Supported formats: {supported}"
            ) from None


@dataclass(frozen=True)
class TransformRequest:
    source_url: str
    width: Optional[int] = None
    height: Optional[int] = None
    quality: int = 80
    grayscale: bool = False
    format: Optional[OutputFormat] = None


def _present(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def _parse_dimension(value: Optional[str], label: str, maximum: int) -> Optional[int]:
    if not _present(value):
        return None
    text = value.strip()
    if not _INT_RE.match(text) or not 1 <= int(text) <= maximum:
        raise InvalidDimension(f"{label} must be between 1 and {maximum}")
    return int(text)


def _parse_quality(value: Optional[str], default: int) -> int:
    if not _present(value):
        return default
    text = value.strip()
    if not _INT_RE.match(text) or not 1 <= int(text) <= 100:
        raise InvalidQuality("Quality must be between 1 and 100")
    return int(text)


def validate_query(query: Mapping[str, str], settings: Settings) -> TransformRequest:
    """
    Validate raw query parameters against the configured limits.

    The URL is only checked for presence here; see parse_request for the
    sanitized variant.

    Raises:
        MissingURL, InvalidDimension, InvalidQuality, UnsupportedFormat
    """
    url = query.get("url")
    if not _present(url):
        raise MissingURL()

    fmt = query.get("format")
    return TransformRequest(
        source_url=url.strip(),
        width=_parse_dimension(query.get("width"), "Width", settings.MAX_WIDTH),
        height=_parse_dimension(query.get("height"), "Height", settings.MAX_HEIGHT),
        quality=_parse_quality(query.get("quality"), settings.DEFAULT_QUALITY),
        grayscale=query.get("grayscale") == "true",
        format=OutputFormat.parse(fmt) if _present(fmt) else None,
    )


def parse_request(query: Mapping[str, str], settings: Settings) -> TransformRequest:
    """Validate parameters and sanitize the source URL in one step."""
    request = validate_query(query, settings)
    return replace(request, source_url=sanitize_url(request.source_url))
