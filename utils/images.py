from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass
from typing import Optional

from PIL import Image

TARGET_MIME = "image/png"

_MIME_RE = re.compile(r"^image/[a-z0-9][a-z0-9.+-]*$")
_AVIF_BRANDS = (b"avif", b"avis")


@dataclass(frozen=True)
class ImageAsset:
    """Normalized image bytes ready for a model call. Never persisted."""

    data: bytes
    mime_type: str
    size_bytes: int


def clean_content_type(content_type: Optional[str]) -> str:
    """Lower-cased media type without parameters (`; charset=...`)."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_avif(data: bytes, content_type: Optional[str] = None) -> bool:
    """
    AVIF check by declared type, then by the `ftyp` box in the first 32 bytes.

    The brand list of the box (major brand at offset 8, compatible brands
    from offset 16) is scanned at 4-byte steps for `avif` or `avis`.
    """
    if "image/avif" in (content_type or "").lower():
        return True

    head = data[:32]
    if len(head) < 12 or head[4:8] != b"ftyp":
        return False

    for offset in range(8, 32, 4):
        if offset + 4 > len(head):
            continue
        if head[offset:offset + 4] in _AVIF_BRANDS:
            return True
    return False


def sniff_mime(data: bytes) -> Optional[str]:
    """Magic-byte sniffing for the raster formats models accept."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def resolve_mime(data: bytes, content_type: Optional[str]) -> str:
    declared = clean_content_type(content_type)
    if _MIME_RE.match(declared):
        return declared
    return sniff_mime(data) or TARGET_MIME


def transcode_to_png(data: bytes) -> bytes:
    """
    Fully decode `data` and re-encode it as PNG.

    Raises whatever Pillow raises on undecodable input; callers map that.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode not in ("RGB", "RGBA", "L", "LA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
    return buf.getvalue()


def to_data_uri(asset: ImageAsset) -> str:
    b64 = base64.b64encode(asset.data).decode("ascii")
    return f"data:{asset.mime_type};base64,{b64}"
