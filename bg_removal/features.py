"""
Vectorized per-pixel features shared by the region detector and the mask generators.

All helpers take uint8 RGB(A) arrays and return float32 / bool arrays aligned 1:1
with the input. Neighbourhood operators replicate the border so every pixel gets
a value.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

_SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float32)
_SOBEL_Y = _SOBEL_X.T.copy()


def intensity(rgb: np.ndarray) -> np.ndarray:
    """Mean of R, G, B as float32, shape (H, W)."""
    return rgb[..., :3].astype(np.float32).mean(axis=2)


def saturation_brightness(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """(max-min)/max saturation and mean brightness, both float32."""
    c = rgb[..., :3].astype(np.float32)
    mx = c.max(axis=-1)
    mn = c.min(axis=-1)
    sat = (mx - mn) / np.maximum(mx, 1.0)
    return sat, c.mean(axis=-1)


def _spread_kernel(base: np.ndarray, scale: int) -> np.ndarray:
    """Place a 3x3 kernel's taps at offsets -scale, 0, +scale."""
    k = np.zeros((2 * scale + 1, 2 * scale + 1), dtype=np.float32)
    k[::scale, ::scale] = base
    return k


def sobel_components(img: np.ndarray, scale: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sobel gx, gy with taps spaced `scale` pixels apart.

    Works on single- or multi-channel float input; multi-channel input is
    filtered per channel.
    """
    if scale < 1:
        raise ValueError(f"scale must be >= 1, got {scale}")
    src = img.astype(np.float32, copy=False)
    gx = cv2.filter2D(src, cv2.CV_32F, _spread_kernel(_SOBEL_X, scale), borderType=cv2.BORDER_REPLICATE)
    gy = cv2.filter2D(src, cv2.CV_32F, _spread_kernel(_SOBEL_Y, scale), borderType=cv2.BORDER_REPLICATE)
    return gx, gy


def color_gradient_magnitude(rgb: np.ndarray, scale: int = 1) -> np.ndarray:
    """
    Sobel magnitude of the strongest RGB channel.

    Taking the per-channel maximum keeps boundaries between colours of equal
    brightness (e.g. pure red on pure green) visible.
    """
    gx, gy = sobel_components(rgb[..., :3], scale)
    mag = np.sqrt(gx * gx + gy * gy)
    return mag.max(axis=2)


def local_variance(gray: np.ndarray, size: int = 5, zero_border: bool = True) -> np.ndarray:
    """
    Mean squared difference between each pixel and its size x size neighbourhood.

    mean((c - n)^2) = c^2 - 2*c*mean(n) + mean(n^2)
    """
    g = gray.astype(np.float32, copy=False)
    mean = cv2.blur(g, (size, size), borderType=cv2.BORDER_REPLICATE)
    mean_sq = cv2.blur(g * g, (size, size), borderType=cv2.BORDER_REPLICATE)
    var = np.maximum(g * g - 2.0 * g * mean + mean_sq, 0.0)
    if zero_border:
        r = size // 2
        var[:r, :] = 0
        var[-r:, :] = 0
        var[:, :r] = 0
        var[:, -r:] = 0
    return var


def neighbor_offsets(radius: int, include_center: bool = True):
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            if dx == 0 and dy == 0 and not include_center:
                continue
            yield dy, dx


def shifted(arr: np.ndarray, dy: int, dx: int, pad: int) -> np.ndarray:
    """View of an edge-padded array shifted by (dy, dx); pad must be >= |dy|, |dx|."""
    h, w = arr.shape[0] - 2 * pad, arr.shape[1] - 2 * pad
    return arr[pad + dy : pad + dy + h, pad + dx : pad + dx + w]


def pad_edge(arr: np.ndarray, pad: int) -> np.ndarray:
    widths = [(pad, pad), (pad, pad)] + [(0, 0)] * (arr.ndim - 2)
    return np.pad(arr, widths, mode="edge")


def fabric_uniformity(rgb: np.ndarray, max_distance: float) -> np.ndarray:
    """
    Share of the 3x3 neighbourhood (centre included) within max_distance in RGB.
    Border pixels score 0.
    """
    c = rgb[..., :3].astype(np.float32)
    padded = pad_edge(c, 1)
    hits = np.zeros(c.shape[:2], dtype=np.float32)
    limit = float(max_distance) ** 2
    for dy, dx in neighbor_offsets(1):
        d = c - shifted(padded, dy, dx, 1)
        hits += (np.einsum("ijk,ijk->ij", d, d) < limit)
    score = hits / 9.0
    score[0, :] = 0
    score[-1, :] = 0
    score[:, 0] = 0
    score[:, -1] = 0
    return score


def fur_texture(gray: np.ndarray, min_variation: float, strong_diff: float, min_strong: int) -> np.ndarray:
    """
    Fur-like pixels: high summed 5x5 brightness deviation with many strong steps.
    """
    g = gray.astype(np.float32, copy=False)
    padded = pad_edge(g, 2)
    total = np.zeros_like(g)
    strong = np.zeros(g.shape, dtype=np.int32)
    for dy, dx in neighbor_offsets(2):
        diff = np.abs(shifted(padded, dy, dx, 2) - g)
        total += diff
        strong += diff > strong_diff
    fur = (total > min_variation) & (strong > min_strong)
    fur[:2, :] = False
    fur[-2:, :] = False
    fur[:, :2] = False
    fur[:, -2:] = False
    return fur


def enclosed_regions(boundary: np.ndarray) -> np.ndarray:
    """
    Pixels that cannot reach the image border without crossing a boundary pixel
    (4-connected flood fill from every border seed).
    """
    free = (~boundary).astype(np.uint8)
    _n, labels = cv2.connectedComponents(free, connectivity=4)
    seeds = np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]])
    reachable = np.isin(labels, np.unique(seeds)) & (free > 0)
    return (free > 0) & ~reachable
