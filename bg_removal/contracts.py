from __future__ import annotations

from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import (
    DEFAULT_QUALITY,
    DEFAULT_SEED,
    DEFAULT_SENSITIVITY,
    DEFAULT_SHADOW_OFFSET,
    FEATHER_RADIUS,
    GENERATOR_NAMES,
)

RegionKind = Literal["face", "body", "hair", "clothing", "object"]
Algorithm = Literal["auto", "portrait", "object", "precise"]
OutputFormat = Literal["png", "webp"]
BackgroundKind = Literal["transparent", "color", "gradient", "blur", "image"]

DEFAULT_DETAIL_STRENGTH = 50


class Rect(BaseModel):
    """Axis-aligned box in working-resolution pixel coordinates."""

    model_config = ConfigDict(frozen=True)

    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(ge=1)
    height: int = Field(ge=1)

    @property
    def x1(self) -> int:
        return self.x + self.width

    @property
    def y1(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @classmethod
    def from_extent(cls, x0: float, y0: float, x1: float, y1: float, width: int, height: int) -> Optional["Rect"]:
        """
        Build a box from a half-open extent, clipped to [0,width) x [0,height).
        Returns None when nothing is left after clipping.
        """
        cx0 = max(0, int(x0))
        cy0 = max(0, int(y0))
        cx1 = min(int(width), int(x1))
        cy1 = min(int(height), int(y1))
        if cx1 <= cx0 or cy1 <= cy0:
            return None
        return cls(x=cx0, y=cy0, width=cx1 - cx0, height=cy1 - cy0)

    @classmethod
    def around_points(cls, xs, ys, width: int, height: int) -> Optional["Rect"]:
        """Tightest box containing every (x, y) sample point."""
        if len(xs) == 0:
            return None
        return cls.from_extent(min(xs), min(ys), max(xs) + 1, max(ys) + 1, width, height)


class Region(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: RegionKind
    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    bounds: Rect


class MaxDimensions(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = Field(gt=0)
    height: int = Field(gt=0)


class QualityMetrics(BaseModel):
    edge_accuracy: float
    detail_preservation: float
    background_cleanness: float


class ProcessingOptions(BaseModel):
    """Per-job configuration. Immutable once the job starts."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    primary_algorithm: Algorithm = "auto"
    sensitivity: int = Field(DEFAULT_SENSITIVITY, ge=10, le=100)
    edge_feathering: Union[bool, int] = False
    detail_preservation: Union[bool, int] = False
    smoothing_level: int = Field(0, ge=0, le=100)
    max_dimensions: Optional[MaxDimensions] = None
    memory_optimized: bool = False
    output_format: OutputFormat = "png"
    quality: int = Field(DEFAULT_QUALITY, ge=10, le=100)
    progress_callback: Optional[Callable[[int, str], Any]] = None

    seed: int = DEFAULT_SEED
    fusion_weights: Optional[Dict[str, float]] = None
    max_input_bytes: Optional[int] = Field(None, gt=0)
    max_pixels: Optional[int] = Field(None, gt=0)
    memory_limit_bytes: Optional[int] = Field(None, gt=0)
    feather_radius: int = Field(FEATHER_RADIUS, ge=1, le=100)

    @field_validator("fusion_weights")
    @classmethod
    def _check_weights(cls, v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        if v is None:
            return v
        unknown = set(v) - set(GENERATOR_NAMES)
        if unknown:
            raise ValueError(f"Unknown generators in fusion_weights: {sorted(unknown)}")
        if any(w < 0 for w in v.values()):
            raise ValueError("fusion_weights must be non-negative")
        return v

    @field_validator("edge_feathering", "detail_preservation")
    @classmethod
    def _check_amount(cls, v: Union[bool, int]) -> Union[bool, int]:
        if not isinstance(v, bool) and not 0 <= v <= 100:
            raise ValueError("amount must be a bool or an int in [0, 100]")
        return v

    @property
    def feather_amount(self) -> int:
        """
        Search radius in pixels, 0 when feathering is off.

        edge_feathering only switches feathering on (True or any positive
        amount); the radius is always feather_radius.
        """
        return self.feather_radius if self.edge_feathering else 0

    @property
    def detail_strength(self) -> int:
        if isinstance(self.detail_preservation, bool):
            return DEFAULT_DETAIL_STRENGTH if self.detail_preservation else 0
        return int(self.detail_preservation)


class BackgroundConfig(BaseModel):
    """
    value is interpreted per kind:
      - color:    colour string ("#ff0000", "red", "rgb(255,0,0)")
      - gradient: CSS linear-gradient(...) string or a list of colour stops
      - blur:     ignored
      - image:    encoded image bytes or a data: URL
    """

    model_config = ConfigDict(frozen=True)

    kind: BackgroundKind = "transparent"
    value: Union[bytes, str, List[str], None] = None
    blur_amount: Optional[float] = Field(None, gt=0)


class CompositingOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    shadow_intensity: float = Field(0.0, ge=0.0, le=1.0)
    shadow_offset: int = Field(DEFAULT_SHADOW_OFFSET, ge=0, le=500)
    quality: int = Field(DEFAULT_QUALITY, ge=10, le=100)
    output_format: OutputFormat = "png"
