"""
Region detector: a cascade of heuristic detectors producing a subject mask.

Stages
  1) skin clusters -> face regions
  2) face-relative body boxes, validated by clothing-like colour statistics
  3) hair above/around each face (dark, low saturation, textured)
  4) clothing inside each body's torso (saturated, locally uniform)
  5) best-effort generic objects: product (crisp enclosed edges),
     animal (fur texture), plant (green dominance + texture)

Every region box is stamped 0 into an all-255 subject mask. Background
candidates are the unstamped areas reachable from the image border.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np
from sklearn.cluster import DBSCAN

from . import config as C
from .contracts import Rect, Region
from .features import (
    color_gradient_magnitude,
    enclosed_regions,
    fabric_uniformity,
    fur_texture,
    intensity,
    local_variance,
    saturation_brightness,
)

logger = logging.getLogger(__name__)

PERSON_ALGORITHMS = ("auto", "portrait", "precise")
OBJECT_ALGORITHMS = ("auto", "object", "precise")


@dataclass(frozen=True)
class DetectionResult:
    """Built once per image; read-only downstream."""

    subject_mask: np.ndarray
    regions: Tuple[Region, ...]
    background_regions: Tuple[Rect, ...]

    def of_kind(self, kind: str) -> List[Region]:
        return [r for r in self.regions if r.kind == kind]


@dataclass
class _FeatureCache:
    """Lazily computed full-frame features shared across per-face work."""

    rgb: np.ndarray
    _gray: Optional[np.ndarray] = field(default=None, repr=False)
    _sat_bright: Optional[Tuple[np.ndarray, np.ndarray]] = field(default=None, repr=False)
    _texture: Optional[np.ndarray] = field(default=None, repr=False)
    _fabric: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def gray(self) -> np.ndarray:
        if self._gray is None:
            self._gray = intensity(self.rgb)
        return self._gray

    @property
    def sat_bright(self) -> Tuple[np.ndarray, np.ndarray]:
        if self._sat_bright is None:
            self._sat_bright = saturation_brightness(self.rgb)
        return self._sat_bright

    @property
    def texture(self) -> np.ndarray:
        if self._texture is None:
            var = local_variance(self.gray, size=5)
            self._texture = np.minimum(1.0, var / C.HAIR_VARIANCE_DIVISOR)
        return self._texture

    @property
    def fabric(self) -> np.ndarray:
        if self._fabric is None:
            self._fabric = fabric_uniformity(self.rgb, C.FABRIC_COLOR_DISTANCE)
        return self._fabric

    def warm(self, person: bool) -> None:
        # Fill caches up front so per-face workers only read.
        _ = self.gray, self.sat_bright
        if person:
            _ = self.texture, self.fabric


# =====================================================
#                 SKIN / FACE DETECTION
# =====================================================

def skin_candidates(rgb: np.ndarray, stride: int = C.SKIN_SAMPLE_STRIDE) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Sample pixels on a stride grid and score skin likelihood.

    Returns (xs, ys, scores) in full-resolution coordinates for samples whose
    score exceeds SKIN_MIN_SCORE.
    """
    sub = rgb[::stride, ::stride, :3].astype(np.int16)
    r, g, b = sub[..., 0], sub[..., 1], sub[..., 2]

    in_range = np.zeros(r.shape, dtype=bool)
    for (rlo, rhi), (glo, ghi), (blo, bhi) in C.SKIN_TONE_RANGES:
        in_range |= (r >= rlo) & (r <= rhi) & (g >= glo) & (g <= ghi) & (b >= blo) & (b <= bhi)

    mx = sub.max(axis=-1)
    mn = sub.min(axis=-1)
    spread = mx - mn
    valid = (
        in_range
        & (spread > C.SKIN_MIN_SPREAD)
        & (np.abs(r - g) > C.SKIN_MIN_RG_DIFF)
        & (r > g)
        & (r > b)
    )
    scores = np.where(valid, np.minimum(1.0, spread / C.SKIN_SCORE_DIVISOR), 0.0).astype(np.float32)
    gy, gx = np.nonzero(scores > C.SKIN_MIN_SCORE)
    return gx * stride, gy * stride, scores[gy, gx]


def cluster_points(
    xs: np.ndarray,
    ys: np.ndarray,
    shape: Tuple[int, int],
    radius: float,
    stride: int,
) -> Tuple[np.ndarray, int]:
    """
    Distance-bounded linking: two samples share a cluster when a chain of
    samples connects them with hops no longer than `radius` (Euclidean, in
    pixels). Returns (label per sample, label count).

    Grid-adjacent samples are always linked, so 8-connected blobs of the
    sample grid are merged first. Two blobs are linked exactly when some pair
    of their outline samples is within `radius`; only the outlines go through
    DBSCAN (eps=radius, min_samples=1 makes it single-linkage).
    """
    if xs.size == 0:
        return np.zeros(0, dtype=np.int64), 0
    h, w = shape
    gh, gw = (h + stride - 1) // stride, (w + stride - 1) // stride
    grid = np.zeros((gh, gw), dtype=np.uint8)
    gxs, gys = xs // stride, ys // stride
    grid[gys, gxs] = 1

    n_blobs, blobs = cv2.connectedComponents(grid, connectivity=8)
    inner = cv2.erode(grid, np.ones((3, 3), np.uint8), borderType=cv2.BORDER_CONSTANT, borderValue=0)
    ey, ex = np.nonzero((grid == 1) & (inner == 0))
    outline = np.column_stack([ex, ey]).astype(np.float64) * stride
    # Sample coordinates are integers, so the slack only absorbs float error at exactly `radius`.
    links = DBSCAN(eps=float(radius) + 1e-6, min_samples=1).fit_predict(outline)

    parent = np.arange(n_blobs)

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    anchor = {}
    for link, blob in np.unique(np.column_stack([links, blobs[ey, ex]]), axis=0):
        if link not in anchor:
            anchor[link] = blob
            continue
        a, b = find(anchor[link]), find(blob)
        if a != b:
            parent[b] = a

    roots = np.array([find(i) for i in range(n_blobs)])
    _, labels = np.unique(roots[blobs[gys, gxs]], return_inverse=True)
    labels = labels.reshape(-1)
    return labels, int(labels.max()) + 1


def detect_faces(rgb: np.ndarray) -> List[Region]:
    h, w = rgb.shape[:2]
    xs, ys, scores = skin_candidates(rgb)
    if xs.size == 0:
        return []

    labels, n = cluster_points(xs, ys, (h, w), C.SKIN_CLUSTER_RADIUS, C.SKIN_SAMPLE_STRIDE)
    counts = np.bincount(labels, minlength=n)
    sums = np.bincount(labels, weights=scores, minlength=n)

    faces: List[Region] = []
    for lbl in np.nonzero(counts > C.SKIN_CLUSTER_MIN_PIXELS)[0]:
        count = int(counts[lbl])
        avg = float(sums[lbl] / count)
        if count <= C.FACE_MIN_PIXELS or avg <= C.FACE_MIN_CONFIDENCE:
            continue
        member = labels == lbl
        bounds = Rect.around_points(xs[member], ys[member], w, h)
        if bounds is not None:
            faces.append(Region(kind="face", label="face", confidence=min(1.0, avg), bounds=bounds))
    return faces


# =====================================================
#              FACE-RELATIVE PERSON PARTS
# =====================================================

def estimate_body(face: Region, feats: _FeatureCache) -> Optional[Region]:
    h, w = feats.rgb.shape[:2]
    fb = face.bounds
    center_x = fb.x + fb.width / 2.0
    body_w = fb.width * C.BODY_WIDTH_FACTOR
    body_h = fb.height * C.BODY_HEIGHT_FACTOR
    bounds = Rect.from_extent(center_x - body_w / 2.0, fb.y, center_x + body_w / 2.0, fb.y + body_h, w, h)
    if bounds is None:
        return None

    stride = C.BODY_SAMPLE_STRIDE
    sat, bright = feats.sat_bright
    s = sat[bounds.y : bounds.y1 : stride, bounds.x : bounds.x1 : stride]
    br = bright[bounds.y : bounds.y1 : stride, bounds.x : bounds.x1 : stride]
    if s.size == 0:
        return None

    lo, hi = C.BODY_BRIGHTNESS_RANGE
    confidence = float(np.mean((s > C.BODY_MIN_SATURATION) & (br > lo) & (br < hi)))
    if confidence <= C.BODY_MIN_CONFIDENCE:
        return None
    return Region(kind="body", label="body", confidence=confidence, bounds=bounds)


def _sampled_region(
    kind: str,
    area: Optional[Rect],
    stride: int,
    keep: np.ndarray,
    conf: np.ndarray,
    min_pixels: int,
    shape: Tuple[int, int],
) -> Optional[Region]:
    """Bound the sampled pixels of `area` where keep is True into one region."""
    if area is None:
        return None
    h, w = shape
    k = keep[area.y : area.y1 : stride, area.x : area.x1 : stride]
    gy, gx = np.nonzero(k)
    if gy.size <= min_pixels:
        return None
    xs = area.x + gx * stride
    ys = area.y + gy * stride
    bounds = Rect.around_points(xs, ys, w, h)
    if bounds is None:
        return None
    c = conf[area.y : area.y1 : stride, area.x : area.x1 : stride][gy, gx]
    confidence = float(np.clip(c.mean(), 0.0, 1.0))
    return Region(kind=kind, label=kind, confidence=confidence, bounds=bounds)


def estimate_hair(face: Region, feats: _FeatureCache) -> Optional[Region]:
    h, w = feats.rgb.shape[:2]
    fb = face.bounds
    fx, fy, fw, fh = C.HAIR_SEARCH
    x0 = fb.x + fb.width * fx
    y0 = fb.y + fb.height * fy
    area = Rect.from_extent(x0, y0, x0 + fb.width * fw, y0 + fb.height * fh, w, h)

    sat, bright = feats.sat_bright
    tex = feats.texture
    keep = (bright < C.HAIR_MAX_BRIGHTNESS) & (sat < C.HAIR_MAX_SATURATION) & (tex > C.HAIR_MIN_TEXTURE)
    conf = (1.0 - bright / 255.0) * tex
    return _sampled_region("hair", area, C.HAIR_SAMPLE_STRIDE, keep, conf, C.HAIR_MIN_PIXELS, (h, w))


def estimate_clothing(body: Region, feats: _FeatureCache) -> Optional[Region]:
    h, w = feats.rgb.shape[:2]
    bb = body.bounds
    tx, ty, tw, th = C.CLOTHING_TORSO
    x0 = bb.x + bb.width * tx
    y0 = bb.y + bb.height * ty
    area = Rect.from_extent(x0, y0, x0 + bb.width * tw, y0 + bb.height * th, w, h)

    sat, bright = feats.sat_bright
    fabric = feats.fabric
    lo, hi = C.CLOTHING_BRIGHTNESS_RANGE
    keep = (sat > C.CLOTHING_MIN_SATURATION) & (bright > lo) & (bright < hi) & (fabric > C.FABRIC_MIN_SCORE)
    conf = sat * fabric
    return _sampled_region("clothing", area, C.CLOTHING_SAMPLE_STRIDE, keep, conf, C.CLOTHING_MIN_PIXELS, (h, w))


def _person_parts(face: Region, feats: _FeatureCache) -> List[Region]:
    """Body, hair and clothing derived from one face."""
    parts: List[Region] = []
    body = estimate_body(face, feats)
    if body is not None:
        parts.append(body)
    hair = estimate_hair(face, feats)
    if hair is not None:
        parts.append(hair)
    if body is not None:
        clothing = estimate_clothing(body, feats)
        if clothing is not None:
            parts.append(clothing)
    return parts


# =====================================================
#                GENERIC OBJECT DETECTORS
# =====================================================

def _component_regions(
    mask: np.ndarray,
    label: str,
    density_source: np.ndarray,
    min_confidence: float,
) -> List[Region]:
    """Close gaps, then turn sizeable components into object regions scored by density."""
    h, w = mask.shape
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (5, 5))
    closed = cv2.morphologyEx(mask.astype(np.uint8), cv2.MORPH_CLOSE, kernel)
    n, labels, stats, _ = cv2.connectedComponentsWithStats(closed, connectivity=8)

    min_area = C.OBJECT_MIN_AREA_FRACTION * h * w
    regions: List[Region] = []
    for lbl in range(1, n):
        x, y, bw, bh, area = (int(v) for v in stats[lbl])
        if area < min_area or area > 0.9 * h * w:
            continue
        comp = labels[y : y + bh, x : x + bw] == lbl
        density = float(density_source[y : y + bh, x : x + bw][comp].mean())
        if density <= min_confidence:
            continue
        bounds = Rect.from_extent(x, y, x + bw, y + bh, w, h)
        if bounds is not None:
            regions.append(Region(kind="object", label=label, confidence=min(1.0, density), bounds=bounds))
    return regions


def detect_products(rgb: np.ndarray, sensitivity: int) -> List[Region]:
    """
    Products: areas fully enclosed by crisp colour edges with a uniform interior.
    confidence = mean(edge crispness, interior uniformity)
    """
    h, w = rgb.shape[:2]
    threshold = sensitivity * (C.EDGE_THRESHOLD_BASE + C.EDGE_THRESHOLD_PER_SCALE)
    magnitude = color_gradient_magnitude(rgb, 1)
    edges = magnitude > threshold
    if not edges.any():
        return []
    inside = enclosed_regions(edges)
    if not inside.any():
        return []

    candidate = (edges | inside).astype(np.uint8)
    n, labels, stats, _ = cv2.connectedComponentsWithStats(candidate, connectivity=8)
    min_area = C.PRODUCT_MIN_AREA_FRACTION * h * w

    regions: List[Region] = []
    for lbl in range(1, n):
        x, y, bw, bh, area = (int(v) for v in stats[lbl])
        if area < min_area or area > 0.9 * h * w:
            continue
        comp = labels[y : y + bh, x : x + bw] == lbl
        interior = comp & inside[y : y + bh, x : x + bw]
        if not interior.any():
            continue
        edge_px = comp & edges[y : y + bh, x : x + bw]
        crisp = float(np.mean(magnitude[y : y + bh, x : x + bw][edge_px] > 2.0 * threshold)) if edge_px.any() else 0.0

        colors = rgb[y : y + bh, x : x + bw, :3][interior].astype(np.float32)
        ref = np.median(colors, axis=0)
        dist = np.sqrt(((colors - ref) ** 2).sum(axis=1))
        uniform = float(np.mean(dist < C.PRODUCT_UNIFORMITY_DISTANCE))

        confidence = 0.5 * crisp + 0.5 * uniform
        if confidence <= C.PRODUCT_MIN_CONFIDENCE:
            continue
        bounds = Rect.from_extent(x, y, x + bw, y + bh, w, h)
        if bounds is not None:
            regions.append(Region(kind="object", label="product", confidence=confidence, bounds=bounds))
    return regions


def detect_animals(feats: _FeatureCache) -> List[Region]:
    fur = fur_texture(feats.gray, C.FUR_MIN_VARIATION, C.FUR_STRONG_DIFF, C.FUR_MIN_STRONG)
    if not fur.any():
        return []
    return _component_regions(fur, "animal", fur.astype(np.float32), C.ANIMAL_MIN_CONFIDENCE)


def detect_plants(feats: _FeatureCache) -> List[Region]:
    c = feats.rgb[..., :3].astype(np.int16)
    r, g, b = c[..., 0], c[..., 1], c[..., 2]
    green = (g > r + C.PLANT_GREEN_MARGIN) & (g > b + C.PLANT_GREEN_MARGIN)
    if not green.any():
        return []
    organic = local_variance(feats.gray, size=5) > C.PLANT_MIN_VARIANCE
    plant = green & organic
    if not plant.any():
        return []
    return _component_regions(plant, "plant", plant.astype(np.float32), C.PLANT_MIN_CONFIDENCE)


# =====================================================
#                 SUBJECT + BACKGROUND MAPS
# =====================================================

def stamp_subject_mask(regions: Iterable[Region], shape: Tuple[int, int]) -> np.ndarray:
    """All-255 mask with every region box stamped 0 (foreground)."""
    mask = np.full(shape, 255, dtype=np.uint8)
    for region in regions:
        b = region.bounds
        mask[b.y : b.y1, b.x : b.x1] = 0
    return mask


def find_background_regions(subject_mask: np.ndarray, min_pixels: int = C.BACKGROUND_REGION_MIN_PIXELS) -> List[Rect]:
    """
    Flood-fill the unstamped area from border seeds (4-connected) and return the
    bounding box of every sizeable reachable component.
    """
    h, w = subject_mask.shape
    free = (subject_mask > C.MASK_THRESHOLD).astype(np.uint8)
    n, labels, stats, _ = cv2.connectedComponentsWithStats(free, connectivity=4)
    if n <= 1:
        return []
    seeds = np.unique(np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]]))

    rects: List[Rect] = []
    for lbl in seeds:
        if lbl == 0:
            continue
        x, y, bw, bh, area = (int(v) for v in stats[lbl])
        if area <= min_pixels:
            continue
        rect = Rect.from_extent(x, y, x + bw, y + bh, w, h)
        if rect is not None:
            rects.append(rect)
    return rects


def detect_regions(
    rgb: np.ndarray,
    algorithm: str = "auto",
    sensitivity: int = C.DEFAULT_SENSITIVITY,
    executor: Optional[Executor] = None,
) -> DetectionResult:
    """
    Run the detector cascade on a working-resolution RGB(A) buffer.

    Person stages run for auto/portrait/precise, generic object detectors for
    auto/object/precise. Per-face work is mapped onto `executor` when given.
    """
    if rgb.ndim != 3 or rgb.shape[2] < 3:
        raise ValueError(f"Expected RGB(A) image (H,W,3|4), got shape={rgb.shape}")
    h, w = rgb.shape[:2]
    person = algorithm in PERSON_ALGORITHMS
    objects = algorithm in OBJECT_ALGORITHMS
    feats = _FeatureCache(rgb=rgb)

    regions: List[Region] = []
    if person:
        faces = detect_faces(rgb)
        regions.extend(faces)
        if faces:
            feats.warm(person=True)
            if executor is not None and len(faces) > 1:
                per_face = list(executor.map(lambda f: _person_parts(f, feats), faces))
            else:
                per_face = [_person_parts(f, feats) for f in faces]
            # Group by kind so the region list reads face, body, hair, clothing.
            parts = [p for group in per_face for p in group]
            for kind in ("body", "hair", "clothing"):
                regions.extend(p for p in parts if p.kind == kind)

    if objects:
        regions.extend(detect_products(rgb, sensitivity))
        regions.extend(detect_animals(feats))
        regions.extend(detect_plants(feats))

    subject = stamp_subject_mask(regions, (h, w))
    background = find_background_regions(subject)
    logger.debug(
        "Detected %d regions (%s), %d background regions",
        len(regions),
        ", ".join(sorted({r.label for r in regions})) or "none",
        len(background),
    )
    return DetectionResult(subject_mask=subject, regions=tuple(regions), background_regions=tuple(background))
