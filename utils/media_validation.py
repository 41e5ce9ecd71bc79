"""Validation helpers for image payloads: MIME types, extensions and data URLs."""

import base64
import binascii
import io
import re

from PIL import Image, UnidentifiedImageError

from utils.errors import ValidationError

MIME_EXT = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/svg+xml": "svg",
}

PIL_FORMAT_EXT = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
    "BMP": "bmp",
    "TIFF": "tiff",
    "ICO": "ico",
}

DATA_IMAGE_PATTERN = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,([a-zA-Z0-9+/=\r\n]+)$")


def extension_from_mime(mime: str | None) -> str:
    """Return the file extension for a known image MIME type, or ''."""
    return MIME_EXT.get((mime or "").lower(), "")


def extension_from_url(url: str) -> str:
    """Return a short alphanumeric extension from the URL path, or ''."""
    tail = str(url).split("?", 1)[0].split("#", 1)[0].rsplit("/", 1)[-1]
    if "." not in tail:
        return ""
    ext = tail.rsplit(".", 1)[-1].lower()
    if not ext or len(ext) > 5 or not ext.isalnum():
        return ""
    return ext


def sniff_extension(data: bytes) -> str:
    """Detect the image format from its header bytes using Pillow."""
    if not data:
        return ""
    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format or ""
    except (UnidentifiedImageError, OSError, ValueError):
        return ""
    return PIL_FORMAT_EXT.get(image_format.upper(), "")


def sanitize_ext(ext: str | None) -> str:
    """Lowercase alphanumerics only, at most five characters, default png."""
    safe = re.sub(r"[^a-z0-9]", "", (ext or "png").lower())
    if not safe or len(safe) > 5:
        return "png"
    return safe


def decode_data_image(data_url: str, max_bytes: int | None = None) -> tuple[str, bytes]:
    """Decode a `data:image/*;base64,...` URL.

    Args:
        data_url: The inline image reference.
        max_bytes: Optional ceiling on the decoded size.

    Returns:
        A tuple of `(mime_type, raw_bytes)`.

    Raises:
        ValidationError: If the URL is malformed, empty, or too large.
    """
    text = (data_url or "").strip()
    matched = DATA_IMAGE_PATTERN.match(text)
    if not matched:
        raise ValidationError(
            "dataUrl is malformed; expected data:image/*;base64,...",
            status=422,
            code="INVALID_DATA_URL",
        )
    mime = matched.group(1).lower()
    payload = re.sub(r"\s", "", matched.group(2))
    try:
        raw = base64.b64decode(payload)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("dataUrl is not valid base64.", status=422, code="INVALID_DATA_URL") from exc
    if not raw:
        raise ValidationError("dataUrl decoded to an empty payload.", status=422, code="EMPTY_DATA_URL")
    if max_bytes and len(raw) > max_bytes:
        raise ValidationError(
            f"Image exceeds the size limit ({max_bytes} bytes).",
            status=413,
            code="IMAGE_TOO_LARGE",
        )
    return mime, raw
