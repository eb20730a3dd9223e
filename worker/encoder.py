"""Deterministic encoding and content hashing.

Encoder settings are fixed per format, so the same pixels, format and
quality always produce the same bytes, and therefore the same hash.
"""

import hashlib
import io
from dataclasses import dataclass

from PIL import Image

from common.config import DEFAULT_QUALITY
from common.errors import PipelineError
from common.storage import content_type_for

PIL_FORMATS = {"webp": "WEBP", "jpeg": "JPEG"}

ENCODER_PARAMS = {
    # method=6 is the slowest, most thorough WebP effort level
    "webp": {"method": 6, "lossless": False, "exact": False},
    # subsampling=2 is 4:2:0 chroma subsampling
    "jpeg": {"subsampling": 2, "optimize": True, "progressive": False},
}


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_etag(content_hash: str) -> str:
    return f'"{content_hash}"'


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    format: str
    content_hash: str

    @property
    def content_type(self) -> str:
        return content_type_for(self.format)

    @property
    def etag(self) -> str:
        return make_etag(self.content_hash)


def encode_image(image: Image.Image, fmt: str, quality: int = DEFAULT_QUALITY) -> EncodedImage:
    """Serialize an image and hash the encoded bytes."""
    if fmt not in PIL_FORMATS:
        raise PipelineError(f"Unsupported output format: {fmt}")
    if not 1 <= quality <= 100:
        raise PipelineError(f"Quality must be between 1 and 100, got {quality}")

    if fmt == "jpeg" and image.mode != "RGB":
        image = image.convert("RGB")
    elif fmt == "webp" and image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    buf = io.BytesIO()
    try:
        image.save(buf, format=PIL_FORMATS[fmt], quality=quality, **ENCODER_PARAMS[fmt])
    except (OSError, ValueError, KeyError) as e:
        raise PipelineError(f"Failed to encode image as {fmt}: {e}") from e

    data = buf.getvalue()
    return EncodedImage(data=data, format=fmt, content_hash=sha256_hex(data))
