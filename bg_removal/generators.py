"""
Background-likelihood mask generators.

Each generator maps a working-resolution RGB(A) buffer to a uint8 mask of the
same size (0 = keep, 255 = remove). Generators share no state, so the pipeline
runs them as independent tasks and joins before fusion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Tuple

import cv2
import numpy as np
from sklearn.cluster import KMeans

from . import config as C
from .features import (
    color_gradient_magnitude,
    enclosed_regions,
    intensity,
    neighbor_offsets,
    pad_edge,
    shifted,
)

logger = logging.getLogger(__name__)

# LBP neighbours as (dx, dy), bit i for entry i, clockwise from top-left.
_LBP_OFFSETS = ((-1, -1), (0, -1), (1, -1), (1, 0), (1, 1), (0, 1), (-1, 1), (-1, 0))


@dataclass(frozen=True)
class GeneratedMask:
    name: str
    mask: np.ndarray
    confidence: float
    diagnostics: Dict[str, float] = field(default_factory=dict)


def _as_mask(background: np.ndarray) -> np.ndarray:
    return np.where(background, 255, 0).astype(np.uint8)


def mask_confidence(mask: np.ndarray, reference: np.ndarray, threshold: int = C.MASK_THRESHOLD) -> float:
    """Fraction of pixels whose background/foreground call matches the reference."""
    if mask.shape != reference.shape:
        raise ValueError(f"Mask shape {mask.shape} does not match reference {reference.shape}")
    return float(np.mean((mask > threshold) == (reference > threshold)))


# =====================================================
#                       EDGE
# =====================================================

def edge_strength(rgb: np.ndarray, sensitivity: int, scales=C.EDGE_SCALES) -> np.ndarray:
    """Sum over scales of 255/scale where the scale's gradient beats its threshold."""
    strength = np.zeros(rgb.shape[:2], dtype=np.float32)
    for scale in scales:
        threshold = sensitivity * (C.EDGE_THRESHOLD_BASE + C.EDGE_THRESHOLD_PER_SCALE * scale)
        edges = color_gradient_magnitude(rgb, scale) > threshold
        strength += edges.astype(np.float32) * (255.0 / scale)
    return strength


def edge_mask(rgb: np.ndarray, sensitivity: int = C.DEFAULT_SENSITIVITY) -> np.ndarray:
    """
    Boundary pixels and everything they fully enclose are foreground; the rest
    is background.
    """
    boundary = edge_strength(rgb, sensitivity) > C.EDGE_STRENGTH_CUTOFF
    foreground = boundary | enclosed_regions(boundary) if boundary.any() else boundary
    return _as_mask(~foreground)


# =====================================================
#                   COLOUR CLUSTERS
# =====================================================

def spatial_kmeans(rgb: np.ndarray, seed: int = C.DEFAULT_SEED) -> Tuple[np.ndarray, np.ndarray]:
    """
    k-means over strided samples of [r, g, b, x*sw, y*sw].

    The spatial weight sw maps positions onto a 0..100 scale and weighs them by
    KMEANS_SPATIAL_WEIGHT, so colour dominates while distant regions of the same
    colour may still split. Returns (centres as [r, g, b, x, y] in pixels, counts).
    """
    h, w = rgb.shape[:2]
    stride = C.KMEANS_SAMPLE_STRIDE
    sw = C.KMEANS_SPATIAL_WEIGHT * C.KMEANS_SPATIAL_SCALE / float(max(w, h))

    ys, xs = np.mgrid[0:h:stride, 0:w:stride]
    colors = rgb[::stride, ::stride, :3].reshape(-1, 3).astype(np.float64)
    samples = np.column_stack([colors, xs.ravel() * sw, ys.ravel() * sw])

    k = min(C.KMEANS_CLUSTERS, samples.shape[0])
    km = KMeans(
        n_clusters=k,
        init="k-means++",
        n_init=C.KMEANS_N_INIT,
        max_iter=C.KMEANS_MAX_ITER,
        random_state=seed,
    )
    labels = km.fit_predict(samples)
    centres = km.cluster_centers_.copy()
    centres[:, 3:] /= sw
    counts = np.bincount(labels, minlength=k)
    return centres, counts


def cluster_background_scores(centres: np.ndarray, rgb: np.ndarray) -> np.ndarray:
    """
    Per-cluster background score in [0, 1]:
      0.4 * closeness of the centroid to an image edge
      0.3 * distance of the centroid from the image centre
      0.3 * share of the image (stride-5 samples) within 40 of the cluster colour
    """
    h, w = rgb.shape[:2]
    cx, cy = centres[:, 3], centres[:, 4]

    to_edge = np.minimum.reduce([cx, w - cx, cy, h - cy])
    edge_presence = 1.0 - np.minimum(1.0, to_edge / (min(w, h) / 2.0))

    max_centre = np.hypot(w / 2.0, h / 2.0)
    centre_distance = np.hypot(cx - w / 2.0, cy - h / 2.0) / max_centre

    stride = C.CLUSTER_UNIFORMITY_STRIDE
    sampled = rgb[::stride, ::stride, :3].reshape(-1, 3).astype(np.float64)
    diff = sampled[None, :, :] - centres[:, None, :3]
    near = np.sqrt((diff ** 2).sum(axis=2)) < C.CLUSTER_UNIFORMITY_DISTANCE
    uniformity = near.mean(axis=1)

    we, wc, wu = C.CLUSTER_SCORE_WEIGHTS
    return we * edge_presence + wc * centre_distance + wu * uniformity


def color_cluster_mask(
    rgb: np.ndarray,
    sensitivity: int = C.DEFAULT_SENSITIVITY,
    seed: int = C.DEFAULT_SEED,
) -> np.ndarray:
    centres, counts = spatial_kmeans(rgb, seed=seed)
    scores = cluster_background_scores(centres, rgb)
    background = scores > C.CLUSTER_BACKGROUND_SCORE
    if not background.any():
        background[int(np.argmax(counts))] = True
    logger.debug("Colour clusters: %d of %d scored as background", int(background.sum()), len(centres))

    c = rgb[..., :3].astype(np.float32)
    nearest = np.full(rgb.shape[:2], np.inf, dtype=np.float32)
    for colour in centres[background, :3].astype(np.float32):
        d = np.sqrt(((c - colour) ** 2).sum(axis=2))
        np.minimum(nearest, d, out=nearest)
    return _as_mask(nearest < sensitivity * C.COLOR_THRESHOLD_FACTOR)


# =====================================================
#                      TEXTURE
# =====================================================

def _lbp_score_table() -> np.ndarray:
    table = np.empty(256, dtype=np.float32)
    for pattern in range(256):
        if pattern in C.LBP_UNIFORM_PATTERNS:
            table[pattern] = C.LBP_UNIFORM_SCORE
            continue
        rotated = ((pattern << 1) | (pattern >> 7)) & 0xFF
        transitions = bin(pattern ^ rotated).count("1")
        table[pattern] = min(1.0, transitions / 8.0)
    return table


_LBP_SCORES = _lbp_score_table()


def lbp_codes(gray: np.ndarray) -> np.ndarray:
    """8-bit local binary pattern: bit set where the neighbour is brighter than the centre."""
    padded = pad_edge(gray.astype(np.float32, copy=False), 1)
    codes = np.zeros(gray.shape, dtype=np.uint8)
    for bit, (dx, dy) in enumerate(_LBP_OFFSETS):
        codes |= (shifted(padded, dy, dx, 1) > gray).astype(np.uint8) << bit
    return codes


def texture_mask(rgb: np.ndarray) -> np.ndarray:
    scores = _LBP_SCORES[lbp_codes(intensity(rgb))]
    return _as_mask(scores < C.TEXTURE_BACKGROUND_SCORE)


# =====================================================
#                   GRADIENT FLOW
# =====================================================

def _flow_kernels(radius: int) -> Tuple[np.ndarray, np.ndarray]:
    size = 2 * radius + 1
    kx = np.zeros((size, size), dtype=np.float32)
    ky = np.zeros((size, size), dtype=np.float32)
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            if dx == 0 and dy == 0:
                continue
            dist = np.hypot(dx, dy)
            kx[dy + radius, dx + radius] = dx / dist
            ky[dy + radius, dx + radius] = dy / dist
    return kx, ky


_FLOW_KX, _FLOW_KY = _flow_kernels(C.GRADIENT_RADIUS)


def gradient_flow(gray: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Inverse-distance weighted gradient over the 5x5 neighbourhood.

    Both kernels sum to zero, so correlating the raw intensities equals summing
    (neighbour - centre) * offset / distance. Returns (magnitude, direction).
    """
    g = gray.astype(np.float32, copy=False)
    gx = cv2.filter2D(g, cv2.CV_32F, _FLOW_KX, borderType=cv2.BORDER_REPLICATE)
    gy = cv2.filter2D(g, cv2.CV_32F, _FLOW_KY, borderType=cv2.BORDER_REPLICATE)
    return np.sqrt(gx * gx + gy * gy), np.arctan2(gy, gx)


def flow_coherence(direction: np.ndarray) -> float:
    """Mean cosine between each pixel's direction and its 8 neighbours'."""
    padded = pad_edge(direction, 1)
    total = np.zeros(direction.shape, dtype=np.float32)
    for dy, dx in neighbor_offsets(1, include_center=False):
        total += np.cos(direction - shifted(padded, dy, dx, 1))
    return float((total / 8.0).mean())


def gradient_flow_mask(rgb: np.ndarray) -> Tuple[np.ndarray, float]:
    magnitude, direction = gradient_flow(intensity(rgb))
    return _as_mask(magnitude < C.GRADIENT_BACKGROUND_MAGNITUDE), flow_coherence(direction)


# =====================================================
#                       OBJECT
# =====================================================

def object_mask(subject_mask: np.ndarray) -> np.ndarray:
    """Binarised subject map: stamped regions 0, everything else 255."""
    return _as_mask(subject_mask > C.MASK_THRESHOLD)


# =====================================================
#                      REGISTRY
# =====================================================

def run_generator(
    name: str,
    rgb: np.ndarray,
    subject_mask: np.ndarray,
    sensitivity: int = C.DEFAULT_SENSITIVITY,
    seed: int = C.DEFAULT_SEED,
) -> GeneratedMask:
    """Run one named generator and score it against the subject mask."""
    diagnostics: Dict[str, float] = {}
    if name == "edge":
        mask = edge_mask(rgb, sensitivity)
    elif name == "color":
        mask = color_cluster_mask(rgb, sensitivity, seed=seed)
    elif name == "texture":
        mask = texture_mask(rgb)
    elif name == "gradient":
        mask, coherence = gradient_flow_mask(rgb)
        diagnostics["coherence"] = coherence
    elif name == "object":
        mask = object_mask(subject_mask)
    else:
        raise ValueError(f"Unknown generator: {name}")

    if mask.shape != subject_mask.shape:
        raise ValueError(f"Generator '{name}' produced shape {mask.shape}, expected {subject_mask.shape}")
    return GeneratedMask(
        name=name,
        mask=mask,
        confidence=mask_confidence(mask, subject_mask),
        diagnostics=diagnostics,
    )

