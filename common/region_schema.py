"""Request and response models for redaction calls.

Coordinates arrive either as pixels or as fractions of the image size. The
representation is an explicit tag (``kind``); when a client leaves it out the
tag is chosen from the field names that were sent, never from their values.
"""

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, HttpUrl, Tag, model_validator

from common.config import MAX_BATCH_ITEMS

ImageFormat = Literal["webp", "jpeg"]
Size = Literal["S", "M", "L"]

BLUR_SIGMA = {"S": 3, "M": 6, "L": 12}
PIXELATE_BLOCK = {"S": 6, "M": 12, "L": 24}

HEX_COLOR = r"^#([0-9A-Fa-f]{6}|[0-9A-Fa-f]{8})$"


# ---------- coordinates ----------

class PixelRect(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["pixel"] = "pixel"
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(ge=1)
    height: int = Field(ge=1)


class UnitRect(BaseModel):
    """Rectangle expressed as fractions of the image width and height."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["unit"] = "unit"
    x_norm: float = Field(ge=0, le=1)
    y_norm: float = Field(ge=0, le=1)
    w_norm: float = Field(gt=0, le=1)
    h_norm: float = Field(gt=0, le=1)

    @model_validator(mode="after")
    def check_inside_unit_square(self) -> "UnitRect":
        if self.x_norm + self.w_norm > 1 or self.y_norm + self.h_norm > 1:
            raise ValueError("Normalized region exceeds image bounds")
        return self


def _coordinates_kind(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        if "kind" in value:
            return value["kind"]
        return "unit" if any(str(k).endswith("_norm") for k in value) else "pixel"
    return getattr(value, "kind", None)


Coordinates = Annotated[
    Union[Annotated[PixelRect, Tag("pixel")], Annotated[UnitRect, Tag("unit")]],
    Discriminator(_coordinates_kind),
]


# ---------- operations ----------

class BlurOp(BaseModel):
    type: Literal["blur"] = "blur"
    size: Size

    @property
    def sigma(self) -> int:
        return BLUR_SIGMA[self.size]


class PixelateOp(BaseModel):
    type: Literal["pixelate"] = "pixelate"
    size: Size

    @property
    def block(self) -> int:
        return PIXELATE_BLOCK[self.size]


class FillOp(BaseModel):
    type: Literal["fill"] = "fill"
    color: str = Field(pattern=HEX_COLOR)

    @property
    def rgba(self) -> tuple:
        """Parse #RRGGBB or #RRGGBBAA; alpha defaults to 255."""
        hex_digits = self.color.lstrip("#")
        r, g, b = (int(hex_digits[i:i + 2], 16) for i in (0, 2, 4))
        a = int(hex_digits[6:8], 16) if len(hex_digits) == 8 else 255
        return r, g, b, a


Operation = Annotated[Union[BlurOp, PixelateOp, FillOp], Field(discriminator="type")]


class Region(BaseModel):
    coordinates: Coordinates
    operation: Operation


# ---------- requests ----------

class OutputOptions(BaseModel):
    format: Optional[ImageFormat] = None
    quality: Optional[int] = Field(default=None, ge=1, le=100)


class ObjectRef(BaseModel):
    bucket: str = Field(min_length=1)
    key: str = Field(min_length=1)


class OutputTarget(ObjectRef):
    format: Optional[ImageFormat] = None
    quality: Optional[int] = Field(default=None, ge=1, le=100)


class RedactRequest(BaseModel):
    """Body of the ``ops`` field of a multipart redaction upload."""

    output: Optional[OutputOptions] = None
    regions: List[Region] = Field(min_length=1)


class Base64RedactRequest(RedactRequest):
    image: str = Field(min_length=1)


class StorageRedactRequest(BaseModel):
    input: ObjectRef
    output: OutputTarget
    regions: List[Region] = Field(min_length=1)
    idempotency_key: Optional[str] = Field(default=None, min_length=1)


class BatchRequest(BaseModel):
    items: List[StorageRedactRequest] = Field(min_length=1, max_length=MAX_BATCH_ITEMS)
    webhook_url: Optional[HttpUrl] = None


# ---------- responses ----------

class StorageRedactResponse(BaseModel):
    ok: bool
    output: Optional[OutputTarget] = None
    processing_time_ms: float
    etag: Optional[str] = None
    skipped: bool = False


class Base64RedactResponse(BaseModel):
    image: str
    format: ImageFormat
    etag: str
    width: int
    height: int
    processing_time_ms: float


class BatchSubmitResponse(BaseModel):
    job_id: str
    items_count: int
    estimated_completion_ms: int
