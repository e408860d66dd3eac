"""Image helpers for the vision API: validation, MIME detection, data URL encoding."""

from __future__ import annotations

import base64
import io
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from core.exceptions import InvalidImage

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp")

_PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}


def validate_image_bytes(image_bytes: bytes) -> str:
    """
    Check that bytes decode as an image. Returns the detected MIME type.
    Raises InvalidImage for empty or undecodable data.
    """
    if not image_bytes:
        raise InvalidImage("Empty image payload")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise InvalidImage(f"Unreadable image: {e}") from e
    return _PIL_FORMAT_TO_MIME.get(fmt, "image/jpeg")


def read_image_file(path: Path) -> tuple[bytes, str]:
    """Read an image file; returns (bytes, mime_type). Raises InvalidImage if not an image."""
    data = Path(path).read_bytes()
    return data, validate_image_bytes(data)


def list_image_files(folder: Path) -> list[Path]:
    """Receipt images directly under folder, sorted by name."""
    root = Path(folder)
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)


def image_to_data_url(image_bytes: bytes, media_type: str = "image/jpeg") -> str:
    """Encode image bytes as data URL for vision API."""
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{media_type};base64,{b64}"
