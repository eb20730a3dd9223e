"""Apply redaction operations to an image, one region at a time.

Operations work on a single in-memory RGBA canvas. Each one crops its own
rectangle, transforms the patch and pastes it back at the same offset, so a
later operation always sees the result of every earlier one and overlapping
regions end up last-write-wins.
"""

import logging
from typing import Iterable, Tuple

from PIL import Image, ImageFilter

from common.errors import PipelineError
from common.region_schema import BlurOp, FillOp, PixelateOp, PixelRect

logger = logging.getLogger(__name__)

ALPHA_MODES = ("RGBA", "LA", "PA", "RGBa", "La")


def has_alpha(image: Image.Image) -> bool:
    if image.mode in ALPHA_MODES:
        return True
    return image.mode == "P" and "transparency" in image.info


def _box(rect: PixelRect) -> Tuple[int, int, int, int]:
    return rect.x, rect.y, rect.x + rect.width, rect.y + rect.height


class RedactionCanvas:
    """Mutable working copy of the image being redacted."""

    def __init__(self, image: Image.Image):
        self.has_alpha = has_alpha(image)
        # convert() always returns a new image; the caller's copy is never touched
        self.image = image.convert("RGBA")

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    def blur(self, rect: PixelRect, sigma: float) -> None:
        box = _box(rect)
        patch = self.image.crop(box).filter(ImageFilter.GaussianBlur(radius=sigma))
        self.image.paste(patch, box[:2])

    def pixelate(self, rect: PixelRect, block: int) -> None:
        box = _box(rect)
        small = (max(1, rect.width // block), max(1, rect.height // block))
        patch = (
            self.image.crop(box)
            .resize(small, Image.Resampling.NEAREST)
            .resize((rect.width, rect.height), Image.Resampling.NEAREST)
        )
        self.image.paste(patch, box[:2])

    def fill(self, rect: PixelRect, rgba: Tuple[int, int, int, int]) -> None:
        box = _box(rect)
        overlay = Image.new("RGBA", (rect.width, rect.height), rgba)
        # standard alpha-over: overlay on top of whatever is there now
        patch = Image.alpha_composite(self.image.crop(box), overlay)
        self.image.paste(patch, box[:2])

    def apply(self, rect: PixelRect, operation) -> None:
        if isinstance(operation, BlurOp):
            self.blur(rect, operation.sigma)
        elif isinstance(operation, PixelateOp):
            self.pixelate(rect, operation.block)
        elif isinstance(operation, FillOp):
            self.fill(rect, operation.rgba)
        else:
            raise PipelineError(f"Unknown operation type: {getattr(operation, 'type', operation)!r}")

    def result(self) -> Image.Image:
        """Final image, RGB unless the source carried transparency."""
        if self.has_alpha:
            return self.image.copy()
        return self.image.convert("RGB")


def composite_regions(image: Image.Image, operations: Iterable[Tuple[PixelRect, object]]) -> Image.Image:
    """Apply resolved (rectangle, operation) pairs strictly in order."""
    canvas = RedactionCanvas(image)
    for index, (rect, operation) in enumerate(operations):
        logger.debug(
            "Applying region operation",
            extra={"region": index, "operation": getattr(operation, "type", None), "x": rect.x, "y": rect.y,
                   "width": rect.width, "height": rect.height},
        )
        canvas.apply(rect, operation)
    return canvas.result()
