from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .config import MAX_SAFE_PIXELS, MEMORY_LIMIT_BYTES, MEMORY_PASSES


@dataclass(frozen=True)
class PreprocessMeta:
    """Metadata required to map working-resolution outputs back to original image space."""

    orig_h: int
    orig_w: int
    work_h: int
    work_w: int
    scale: float

    @property
    def downscaled(self) -> bool:
        return (self.work_w, self.work_h) != (self.orig_w, self.orig_h)

    @property
    def work_pixels(self) -> int:
        return self.work_w * self.work_h


def compute_working_size(
    orig_w: int,
    orig_h: int,
    max_dimensions: Optional[Tuple[int, int]] = None,
    max_pixels: int = MAX_SAFE_PIXELS,
    memory_limit: int = MEMORY_LIMIT_BYTES,
    passes: int = MEMORY_PASSES,
) -> PreprocessMeta:
    """
    Pick one scale factor <= 1 that satisfies, at the same time:
      1) working pixel count <= max_pixels
      2) working width/height <= caller max dimensions
      3) estimated memory (w * h * 4 * passes) <= memory_limit

    Working sizes are floor(orig * scale), never below 1. For degenerate aspect
    ratios where clamping an axis to 1 would break the pixel ceiling, the other
    axis is shrunk instead.
    """
    if orig_w <= 0 or orig_h <= 0:
        raise ValueError(f"Invalid image size: {(orig_w, orig_h)}")
    if max_pixels <= 0 or memory_limit <= 0 or passes <= 0:
        raise ValueError("Resource limits must be positive")

    total = float(orig_w) * float(orig_h)
    memory_pixels = memory_limit // (4 * passes)
    pixel_ceiling = max(1, min(int(max_pixels), int(memory_pixels)))

    scale = 1.0
    if total > pixel_ceiling:
        scale = math.sqrt(pixel_ceiling / total)
    if max_dimensions is not None:
        max_w, max_h = max_dimensions
        if max_w <= 0 or max_h <= 0:
            raise ValueError(f"Invalid max dimensions: {max_dimensions}")
        scale = min(scale, max_w / float(orig_w), max_h / float(orig_h))

    work_w = max(1, int(math.floor(orig_w * scale)))
    work_h = max(1, int(math.floor(orig_h * scale)))

    # floor() can land exactly on the ceiling; rounding noise in sqrt can push it over.
    while work_w * work_h > pixel_ceiling:
        if work_w >= work_h and work_w > 1:
            work_w = max(1, min(work_w - 1, pixel_ceiling // work_h))
        else:
            work_h = max(1, min(work_h - 1, pixel_ceiling // work_w))

    return PreprocessMeta(
        orig_h=int(orig_h),
        orig_w=int(orig_w),
        work_h=work_h,
        work_w=work_w,
        scale=float(scale),
    )


def resize_to_working(rgba: np.ndarray, meta: PreprocessMeta) -> np.ndarray:
    """
    Downscale the decoded RGBA buffer to the working resolution.

    INTER_AREA is used for shrinking, matching a high quality canvas draw.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got shape={rgba.shape}")
    if rgba.shape[:2] != (meta.orig_h, meta.orig_w):
        raise ValueError(f"Buffer shape {rgba.shape[:2]} does not match meta {(meta.orig_h, meta.orig_w)}")
    if not meta.downscaled:
        return np.ascontiguousarray(rgba)
    resized = cv2.resize(rgba, (meta.work_w, meta.work_h), interpolation=cv2.INTER_AREA)
    return np.ascontiguousarray(resized, dtype=np.uint8)


def meta_to_dict(meta: PreprocessMeta) -> Dict[str, int | float]:
    """Convenience helper if you want JSON-serializable metadata."""
    return {
        "orig_h": meta.orig_h,
        "orig_w": meta.orig_w,
        "work_h": meta.work_h,
        "work_w": meta.work_w,
        "scale": float(meta.scale),
    }
