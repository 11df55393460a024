from __future__ import annotations

from typing import Dict, Mapping, Optional

import numpy as np

from .config import FUSION_CONFIDENCE_OFFSET, FUSION_WEIGHTS, GENERATOR_NAMES


def base_weights(overrides: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
    """Default fusion weights with caller overrides applied on top."""
    weights = dict(FUSION_WEIGHTS)
    if overrides:
        unknown = set(overrides) - set(GENERATOR_NAMES)
        if unknown:
            raise ValueError(f"Unknown generators in fusion weights: {sorted(unknown)}")
        weights.update({k: float(v) for k, v in overrides.items()})
    return weights


def fusion_weights(
    confidences: Mapping[str, float],
    overrides: Optional[Mapping[str, float]] = None,
) -> Dict[str, float]:
    """
    Scale each base weight by (0.5 + confidence) and renormalize to 1.

    Only generators present in `confidences` take part.
    """
    base = base_weights(overrides)
    adjusted = {
        name: base[name] * (FUSION_CONFIDENCE_OFFSET + float(conf))
        for name, conf in confidences.items()
    }
    total = sum(adjusted.values())
    if total <= 0:
        raise ValueError("Fusion weights sum to zero; enable at least one generator")
    return {name: w / total for name, w in adjusted.items()}


def fuse_masks(
    masks: Mapping[str, np.ndarray],
    confidences: Mapping[str, float],
    overrides: Optional[Mapping[str, float]] = None,
) -> np.ndarray:
    """
    Per-pixel confidence-weighted mean of the generator masks.

    Accumulates in GENERATOR_NAMES order so repeated runs are bit-identical.
    """
    if not masks:
        raise ValueError("No masks to fuse")
    if set(masks) != set(confidences):
        raise ValueError("Every mask needs a confidence score")
    shapes = {m.shape for m in masks.values()}
    if len(shapes) != 1:
        raise ValueError(f"Masks differ in shape: {sorted(shapes)}")

    weights = fusion_weights(confidences, overrides)
    fused = np.zeros(shapes.pop(), dtype=np.float64)
    for name in GENERATOR_NAMES:
        if name in masks:
            fused += masks[name].astype(np.float64) * weights[name]
    return np.clip(np.rint(fused), 0, 255).astype(np.uint8)
