from __future__ import annotations

import math

import cv2
import numpy as np

from .config import DETAIL_BOOST_FACTOR, FEATHER_RADIUS, MASK_THRESHOLD, MORPH_KERNEL_SIZE


def _check_mask(mask: np.ndarray) -> np.ndarray:
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask.shape}")
    if mask.dtype != np.uint8:
        raise ValueError(f"Expected uint8 mask, got dtype={mask.dtype}")
    return mask


def _kernel(kernel_size: int) -> np.ndarray:
    k = int(kernel_size)
    if k % 2 == 0:
        k += 1
    return np.ones((k, k), np.uint8)


def open_mask(mask: np.ndarray, kernel_size: int = MORPH_KERNEL_SIZE) -> np.ndarray:
    """
    Morphological opening on the raw mask values (erosion, then dilation).

    Purpose: drop isolated background specks narrower than the kernel.
    """
    m = _check_mask(mask)
    if kernel_size <= 0:
        return m.copy()
    kernel = _kernel(kernel_size)
    return cv2.dilate(cv2.erode(m, kernel, iterations=1), kernel, iterations=1)


def close_mask(mask: np.ndarray, kernel_size: int = MORPH_KERNEL_SIZE) -> np.ndarray:
    """
    Morphological closing (dilation, then erosion).

    Purpose: fill foreground holes narrower than the kernel.
    """
    m = _check_mask(mask)
    if kernel_size <= 0:
        return m.copy()
    kernel = _kernel(kernel_size)
    return cv2.erode(cv2.dilate(m, kernel, iterations=1), kernel, iterations=1)


def feather_mask(mask: np.ndarray, radius: int = FEATHER_RADIUS, threshold: int = MASK_THRESHOLD) -> np.ndarray:
    """
    Soften background pixels near the subject.

    For every background pixel (mask > threshold) the Euclidean distance d to
    the nearest foreground pixel sets alpha = 255 * max(0, 1 - d / radius).
    Foreground pixels are left alone.
    """
    m = _check_mask(mask)
    if radius <= 0:
        return m.copy()
    background = m > threshold
    if background.all() or not background.any():
        return m.copy()

    dist = cv2.distanceTransform(background.astype(np.uint8), cv2.DIST_L2, cv2.DIST_MASK_PRECISE)
    alpha = np.rint(255.0 * np.maximum(0.0, 1.0 - dist / float(radius)))
    out = m.copy()
    out[background] = (255 - alpha[background]).astype(np.uint8)
    return out


def boost_detail(mask: np.ndarray, strength: int, threshold: int = MASK_THRESHOLD) -> np.ndarray:
    """Multiply foreground alpha by 1 + strength/100 * 0.1, capped at 255."""
    m = _check_mask(mask)
    if strength <= 0:
        return m.copy()
    factor = 1.0 + (strength / 100.0) * DETAIL_BOOST_FACTOR
    foreground = m <= threshold
    alpha = 255.0 - m.astype(np.float32)
    boosted = np.minimum(255.0, np.rint(alpha * factor))
    out = m.copy()
    out[foreground] = (255.0 - boosted[foreground]).astype(np.uint8)
    return out


def smooth_mask(mask: np.ndarray, level: int) -> np.ndarray:
    """
    Exponential-falloff smoothing of the alpha implied by the mask.

    radius = ceil(level / 10), weight = exp(-d / (radius / 2)); weights are
    normalized over in-bounds neighbours only.
    """
    m = _check_mask(mask)
    if level <= 0:
        return m.copy()
    radius = int(math.ceil(level / 10.0))
    ys, xs = np.mgrid[-radius : radius + 1, -radius : radius + 1]
    kernel = np.exp(-np.hypot(xs, ys) / (radius * 0.5)).astype(np.float32)

    alpha = 255.0 - m.astype(np.float32)
    border = dict(borderType=cv2.BORDER_CONSTANT)
    num = cv2.filter2D(alpha, cv2.CV_32F, kernel, **border)
    den = cv2.filter2D(np.ones_like(alpha), cv2.CV_32F, kernel, **border)
    smoothed = np.clip(np.rint(num / den), 0, 255)
    return (255.0 - smoothed).astype(np.uint8)


def refine_mask(
    mask: np.ndarray,
    *,
    closing: bool = False,
    feather_amount: int = 0,
    detail_strength: int = 0,
    smoothing_level: int = 0,
) -> np.ndarray:
    """
    Full refinement:
      - opening (always)
      - closing (optional)
      - detail boost, edge feathering, smoothing (each only when enabled)
    """
    out = open_mask(mask)
    if closing:
        out = close_mask(out)
    # Boosting never moves a pixel across the threshold, so feathering sees the same split.
    if detail_strength > 0:
        out = boost_detail(out, detail_strength)
    if feather_amount > 0:
        out = feather_mask(out, radius=feather_amount)
    if smoothing_level > 0:
        out = smooth_mask(out, smoothing_level)
    return out
