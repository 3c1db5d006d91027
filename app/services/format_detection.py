# app/services/format_detection.py
import io
import os
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from app.core.errors import ErrorCategory, UploadError

MIN_SNIFF_BYTES = 10

_EXTENSIONS = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".avif": "image/avif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}

_PIL_MIME = {"MPO": "image/jpeg"}


@dataclass(frozen=True)
class DetectedFormat:
    mime: str
    confidence: str  # high | medium | low
    method: str  # magic | decoder | extension


def _magic(data: bytes) -> Optional[str]:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:2] == b"BM":
        return "image/bmp"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    return None


def _probe(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format or ""
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return _PIL_MIME.get(fmt) or Image.MIME.get(fmt)


def detect_format(data: bytes, file_name: str = "") -> DetectedFormat:
    """Bepaal het echte formaat: magic bytes, dan Pillow, dan de extensie."""
    if len(data) < MIN_SNIFF_BYTES:
        raise UploadError(
            f"File too small to identify ({len(data)} bytes)",
            ErrorCategory.format,
            retryable=False,
            code="too_small",
            suggestions=["Upload a complete image file"],
        )

    mime = _magic(data)
    if mime:
        return DetectedFormat(mime, "high", "magic")

    mime = _probe(data)
    if mime:
        return DetectedFormat(mime, "medium", "decoder")

    ext = os.path.splitext(file_name or "")[1].lower()
    if ext in _EXTENSIONS:
        return DetectedFormat(_EXTENSIONS[ext], "low", "extension")

    raise UploadError(
        "Unrecognized image format",
        ErrorCategory.format,
        retryable=False,
        code="unknown_format",
        suggestions=["Upload a JPEG, PNG, WebP, GIF, BMP or TIFF image"],
    )
