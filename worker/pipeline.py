"""Single-image redaction pipeline.

validate input -> decode -> resolve coordinates -> composite -> encode.
The pipeline is all-or-nothing: it returns a complete ProcessedImage or
raises a RedactionError, never a partial result.
"""

import io
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from common.config import DEFAULT_FORMAT, DEFAULT_QUALITY, MAX_BYTES, MAX_PIXELS, MAX_REGIONS
from common.errors import (
    LimitExceeded,
    PipelineError,
    RedactionError,
    UnsupportedMedia,
    ValidationError,
)
from common.region_schema import PixelRect, Region
from common.storage import content_type_for
from worker.compositor import composite_regions, has_alpha
from worker.coords import ImageSize, resolve_coordinates
from worker.encoder import encode_image, make_etag

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str
    mime: Optional[str]
    size: int
    has_alpha: bool

    @property
    def pixels(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class ProcessedImage:
    buffer: bytes
    format: str
    content_hash: str
    width: int
    height: int
    processing_duration_ms: float

    @property
    def etag(self) -> str:
        return make_etag(self.content_hash)

    @property
    def content_type(self) -> str:
        return content_type_for(self.format)


def probe_image(data: bytes) -> ImageInfo:
    """Sniff format and dimensions without decoding pixel data."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format or "unknown"
            width, height = img.size
            alpha = has_alpha(img)
    except Image.DecompressionBombError as e:
        raise LimitExceeded(str(e)) from e
    except (UnidentifiedImageError, OSError) as e:
        raise UnsupportedMedia("Could not detect file type from buffer") from e

    return ImageInfo(
        width=width,
        height=height,
        format=fmt,
        mime=Image.MIME.get(fmt),
        size=len(data),
        has_alpha=alpha,
    )


def validate_input(
    data: bytes,
    declared_mime: Optional[str] = None,
    max_bytes: int = MAX_BYTES,
    max_pixels: int = MAX_PIXELS,
) -> ImageInfo:
    """Check payload size, media type and pixel count before any decoding."""
    if not data:
        raise ValidationError("Image payload is empty")

    if len(data) > max_bytes:
        raise LimitExceeded(f"File size {len(data)} bytes exceeds maximum allowed size {max_bytes} bytes")

    info = probe_image(data)

    if info.mime not in SUPPORTED_MIME_TYPES:
        raise UnsupportedMedia(
            f"Unsupported file type: {info.mime or info.format}. "
            f"Supported types: {', '.join(SUPPORTED_MIME_TYPES)}",
            details={"detected_type": info.mime},
        )

    if declared_mime:
        declared = declared_mime.split(";")[0].strip().lower()
        if declared != info.mime:
            raise UnsupportedMedia(
                f"MIME type mismatch: declared {declared}, detected {info.mime}",
                details={"declared_type": declared, "detected_type": info.mime},
            )

    if info.pixels > max_pixels:
        raise LimitExceeded(
            f"Image size {info.width}x{info.height} ({info.pixels} pixels) "
            f"exceeds maximum allowed {max_pixels} pixels"
        )

    return info


def validate_regions(regions: Sequence[Region], max_regions: int = MAX_REGIONS) -> None:
    if not regions:
        raise ValidationError("At least one redaction region is required")
    if len(regions) > max_regions:
        raise LimitExceeded(f"Too many regions: {len(regions)}. Maximum allowed: {max_regions}")


def decode_image(data: bytes) -> Image.Image:
    """Decode fully and apply EXIF orientation."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            oriented = ImageOps.exif_transpose(img)
            # exif_transpose hands back the same object when there is nothing to do
            return oriented.copy() if oriented is img else oriented
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise PipelineError(f"Failed to decode image: {e}") from e


def resolve_regions(regions: Sequence[Region], size: ImageSize) -> List[Tuple[PixelRect, object]]:
    return [(resolve_coordinates(region.coordinates, size), region.operation) for region in regions]


def redact_image(
    data: bytes,
    regions: Sequence[Region],
    fmt: Optional[str] = None,
    quality: Optional[int] = None,
    declared_mime: Optional[str] = None,
    max_bytes: int = MAX_BYTES,
    max_pixels: int = MAX_PIXELS,
    max_regions: int = MAX_REGIONS,
) -> ProcessedImage:
    """Apply every region to the image and encode the result.

    Args:
        data: Encoded source image (JPEG, PNG or WebP)
        regions: Regions in application order; later ones see earlier results
        fmt: Output format, ``webp`` or ``jpeg`` (DEFAULT_FORMAT if None)
        quality: Output quality 1-100 (DEFAULT_QUALITY if None)
        declared_mime: Client-declared content type, checked against the sniffed one

    Returns:
        ProcessedImage with encoded bytes and their SHA-256 content hash
    """
    started = time.perf_counter()

    info = validate_input(data, declared_mime, max_bytes=max_bytes, max_pixels=max_pixels)
    validate_regions(regions, max_regions=max_regions)

    fmt = fmt or DEFAULT_FORMAT
    quality = quality or DEFAULT_QUALITY

    try:
        image = decode_image(data)
        size = ImageSize(*image.size)
        resolved = resolve_regions(regions, size)
        final = composite_regions(image, resolved)
        encoded = encode_image(final, fmt, quality)
    except RedactionError:
        raise
    except Exception as e:
        raise PipelineError(f"Image processing failed: {e}") from e

    duration_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "Image redacted",
        extra={
            "source_format": info.format,
            "width": size.width,
            "height": size.height,
            "regions": len(regions),
            "output_format": fmt,
            "output_bytes": len(encoded.data),
            "duration_ms": round(duration_ms, 2),
        },
    )

    return ProcessedImage(
        buffer=encoded.data,
        format=fmt,
        content_hash=encoded.content_hash,
        width=size.width,
        height=size.height,
        processing_duration_ms=duration_ms,
    )
