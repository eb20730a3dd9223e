"""Resolve region coordinates to in-bounds pixel rectangles."""

import math
from typing import NamedTuple, Union

from common.errors import InvalidRegion
from common.region_schema import PixelRect, UnitRect


class ImageSize(NamedTuple):
    width: int
    height: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def unit_to_pixel(coords: UnitRect, size: ImageSize) -> PixelRect:
    """Scale a unit-interval rectangle to pixels, rounding to nearest.

    The result is not clamped yet, and may have zero width or height.
    """
    return PixelRect.model_construct(
        kind="pixel",
        x=_round_half_up(coords.x_norm * size.width),
        y=_round_half_up(coords.y_norm * size.height),
        width=_round_half_up(coords.w_norm * size.width),
        height=_round_half_up(coords.h_norm * size.height),
    )


def clamp_to_bounds(rect: PixelRect, size: ImageSize, strict_origin: bool = False) -> PixelRect:
    """Clamp a pixel rectangle into the image.

    The origin is pulled into [0, dimension) and the extent trimmed to the
    remaining space, never below one pixel. With ``strict_origin`` an origin
    that lies on or past the far edge is an error instead of being pulled
    back, which is what scaled unit-interval input needs (x_norm=1 has no
    pixels to cover).
    """
    if size.width < 1 or size.height < 1:
        raise InvalidRegion(f"Image has invalid dimensions {size.width}x{size.height}")

    x = max(0, rect.x)
    y = max(0, rect.y)
    if not strict_origin:
        x = min(x, size.width - 1)
        y = min(y, size.height - 1)

    room_x = size.width - x
    room_y = size.height - y
    # a unit strip thinner than half a pixel at the far edge rounds to x == width and is rejected
    if room_x <= 0 or room_y <= 0:
        raise InvalidRegion(
            "Region has no area after adjusting to image bounds",
            details={"x": rect.x, "y": rect.y, "image_width": size.width, "image_height": size.height},
        )

    return PixelRect(
        x=x,
        y=y,
        width=max(1, min(rect.width, room_x)),
        height=max(1, min(rect.height, room_y)),
    )


def resolve_coordinates(coords: Union[PixelRect, UnitRect], size: ImageSize) -> PixelRect:
    """Turn either coordinate representation into a clamped pixel rectangle."""
    if isinstance(coords, UnitRect):
        return clamp_to_bounds(unit_to_pixel(coords, size), size, strict_origin=True)
    if isinstance(coords, PixelRect):
        return clamp_to_bounds(coords, size)
    raise InvalidRegion(f"Unsupported coordinate type: {type(coords).__name__}")
