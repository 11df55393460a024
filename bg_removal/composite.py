from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageColor, ImageOps

from .config import DEFAULT_BLUR_AMOUNT, DEFAULT_GRADIENT_ANGLE, SHADOW_BLUR_SIGMA, get_max_input_bytes
from .contracts import BackgroundConfig, CompositingOptions
from .io import check_input_size, decode_data_url, decode_rgba, open_image
from .preprocess import PreprocessMeta

logger = logging.getLogger(__name__)

_ANGLE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(deg|turn|rad)\s*$", re.IGNORECASE)
_STOP_RE = re.compile(r"^(.*?)(?:\s+(-?\d+(?:\.\d+)?)%)?\s*$")
_SIDE_ANGLES = {
    "to top": 0.0,
    "to top right": 45.0,
    "to right top": 45.0,
    "to right": 90.0,
    "to bottom right": 135.0,
    "to right bottom": 135.0,
    "to bottom": 180.0,
    "to bottom left": 225.0,
    "to left bottom": 225.0,
    "to left": 270.0,
    "to top left": 315.0,
    "to left top": 315.0,
}


# =====================================================
#                   ALPHA COMPOSITOR
# =====================================================

def inject_alpha(rgba: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Write 255 - mask into the alpha channel of a copy of the working buffer.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
    if mask.ndim != 2 or mask.shape != rgba.shape[:2]:
        raise ValueError(f"Mask shape {mask.shape} does not match image {rgba.shape[:2]}")
    out = rgba.copy()
    out[..., 3] = 255 - mask.astype(np.uint8)
    return out


def restore_to_original(rgba: np.ndarray, meta: PreprocessMeta) -> np.ndarray:
    """Bilinear upsample of colour + alpha back to native size when the job was downscaled."""
    if rgba.shape[:2] != (meta.work_h, meta.work_w):
        raise ValueError(f"Buffer shape {rgba.shape[:2]} does not match working size {(meta.work_h, meta.work_w)}")
    if not meta.downscaled:
        return rgba
    restored = cv2.resize(rgba, (meta.orig_w, meta.orig_h), interpolation=cv2.INTER_LINEAR)
    return np.ascontiguousarray(restored, dtype=np.uint8)


# =====================================================
#                  BACKGROUND FILLS
# =====================================================

def parse_color(value: str) -> Tuple[int, int, int, int]:
    """Any colour string Pillow understands, as an RGBA tuple (opaque unless given)."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected a colour string, got {value!r}")
    rgb = ImageColor.getrgb(value.strip())
    if len(rgb) == 3:
        return (rgb[0], rgb[1], rgb[2], 255)
    return tuple(rgb)  # type: ignore[return-value]


def solid_fill(size: Tuple[int, int], color: str) -> np.ndarray:
    w, h = size
    out = np.empty((h, w, 4), dtype=np.uint8)
    out[...] = parse_color(color)
    return out


@dataclass(frozen=True)
class GradientSpec:
    angle: float
    colors: Tuple[Tuple[int, int, int, int], ...]
    positions: Tuple[float, ...]


def _split_top_level(text: str) -> List[str]:
    """Split on commas that are not nested inside parentheses."""
    parts, depth, start = [], 0, 0
    for i, ch in enumerate(text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
    parts.append(text[start:].strip())
    return [p for p in parts if p]


def _parse_angle(token: str) -> Optional[float]:
    side = " ".join(token.lower().split())
    if side in _SIDE_ANGLES:
        return _SIDE_ANGLES[side]
    m = _ANGLE_RE.match(token)
    if m is None:
        return None
    value, unit = float(m.group(1)), m.group(2).lower()
    if unit == "turn":
        return value * 360.0
    if unit == "rad":
        return math.degrees(value)
    return value


def _fill_positions(raw: Sequence[Optional[float]]) -> List[float]:
    """Missing stop positions: first 0, last 1, gaps spread evenly between known stops."""
    pos = list(raw)
    if pos[0] is None:
        pos[0] = 0.0
    if pos[-1] is None:
        pos[-1] = 1.0
    i = 0
    while i < len(pos):
        if pos[i] is not None:
            i += 1
            continue
        j = i
        while pos[j] is None:
            j += 1
        lo, hi = pos[i - 1], pos[j]
        for k in range(i, j):
            pos[k] = lo + (hi - lo) * (k - i + 1) / (j - i + 1)
        i = j
    # Positions never go backwards along the line.
    for k in range(1, len(pos)):
        pos[k] = max(pos[k], pos[k - 1])
    return [float(p) for p in pos]


def parse_gradient(value: Union[str, Sequence[str]]) -> GradientSpec:
    """
    Accepts a CSS linear-gradient string:
      "linear-gradient(135deg, #667eea 0%, #764ba2 100%)"
    or a list of colour stops (each optionally followed by a percentage).
    """
    if isinstance(value, str):
        text = value.strip()
        m = re.match(r"^linear-gradient\s*\((.*)\)\s*$", text, re.IGNORECASE | re.DOTALL)
        if m is None:
            raise ValueError(f"Unsupported gradient: {value!r}")
        tokens = _split_top_level(m.group(1))
    else:
        tokens = [str(t).strip() for t in value]

    angle = DEFAULT_GRADIENT_ANGLE
    if tokens:
        parsed = _parse_angle(tokens[0])
        if parsed is not None:
            angle = parsed
            tokens = tokens[1:]
    if not tokens:
        raise ValueError("Gradient needs at least one colour stop")

    colors, raw_positions = [], []
    for token in tokens:
        sm = _STOP_RE.match(token)
        color_text = sm.group(1).strip() if sm else token
        colors.append(parse_color(color_text))
        raw_positions.append(float(sm.group(2)) / 100.0 if sm and sm.group(2) is not None else None)

    return GradientSpec(angle=angle % 360.0, colors=tuple(colors), positions=tuple(_fill_positions(raw_positions)))


def gradient_fill(size: Tuple[int, int], spec: GradientSpec) -> np.ndarray:
    """
    Render a linear gradient with CSS geometry: 0deg points up, angles turn
    clockwise, and the gradient line spans |w sin a| + |h cos a|.
    """
    w, h = size
    a = math.radians(spec.angle)
    dx, dy = math.sin(a), -math.cos(a)
    length = abs(w * dx) + abs(h * dy)

    ys, xs = np.mgrid[0:h, 0:w].astype(np.float32)
    proj = (xs + 0.5 - w / 2.0) * dx + (ys + 0.5 - h / 2.0) * dy
    t = proj / length + 0.5 if length > 0 else np.full((h, w), 0.5, dtype=np.float32)

    colors = np.asarray(spec.colors, dtype=np.float32)
    out = np.empty((h, w, 4), dtype=np.uint8)
    for ch in range(4):
        out[..., ch] = np.clip(np.rint(np.interp(t, spec.positions, colors[:, ch])), 0, 255)
    return out


def blur_fill(source: np.ndarray, size: Tuple[int, int], amount: float = DEFAULT_BLUR_AMOUNT) -> np.ndarray:
    """Opaque Gaussian-blurred copy of the source colours, resized to `size` if needed."""
    w, h = size
    rgb = np.ascontiguousarray(source[..., :3])
    if rgb.shape[:2] != (h, w):
        rgb = cv2.resize(rgb, (w, h), interpolation=cv2.INTER_LINEAR)
    blurred = cv2.GaussianBlur(rgb, (0, 0), sigmaX=float(amount), sigmaY=float(amount))
    alpha = np.full((h, w, 1), 255, dtype=np.uint8)
    return np.concatenate([blurred, alpha], axis=2)


def image_fill(value: Union[bytes, str], size: Tuple[int, int]) -> np.ndarray:
    """Decode a background image (bytes or data: URL), scale to cover and centre-crop."""
    data = decode_data_url(value) if isinstance(value, str) else value
    check_input_size(data, get_max_input_bytes())
    img = Image.fromarray(decode_rgba(open_image(data)))
    fitted = ImageOps.fit(img, size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
    return np.array(fitted.convert("RGBA"), dtype=np.uint8)


def shadow_layer(alpha: np.ndarray, intensity: float, offset: int, sigma: float = SHADOW_BLUR_SIGMA) -> np.ndarray:
    """Black RGBA layer whose alpha is the blurred subject alpha, scaled and shifted down-right."""
    h, w = alpha.shape
    soft = cv2.GaussianBlur(alpha.astype(np.float32), (0, 0), sigmaX=sigma, sigmaY=sigma) * float(intensity)
    shifted = np.zeros_like(soft)
    if offset < h and offset < w:
        shifted[offset:, offset:] = soft[: h - offset, : w - offset]
    layer = np.zeros((h, w, 4), dtype=np.uint8)
    layer[..., 3] = np.clip(np.rint(shifted), 0, 255).astype(np.uint8)
    return layer


def _over(top: np.ndarray, bottom: np.ndarray) -> np.ndarray:
    out = Image.alpha_composite(Image.fromarray(bottom), Image.fromarray(top))
    return np.array(out, dtype=np.uint8)


def compose_rgba(
    subject: np.ndarray,
    background: BackgroundConfig,
    options: Optional[CompositingOptions] = None,
    original: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Draw `background` behind an RGBA subject:
      1) build the fill for the requested kind
      2) optional soft shadow from the subject alpha
      3) subject on top, respecting its alpha
    """
    if subject.ndim != 3 or subject.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got {subject.shape}")
    opts = options or CompositingOptions()
    h, w = subject.shape[:2]
    size = (w, h)

    kind = background.kind
    if kind == "transparent":
        return subject
    if kind == "color":
        fill = solid_fill(size, background.value)
    elif kind == "gradient":
        if background.value is None or isinstance(background.value, bytes):
            raise ValueError("Gradient background needs a CSS gradient string or a list of stops")
        fill = gradient_fill(size, parse_gradient(background.value))
    elif kind == "blur":
        source = original if original is not None else subject
        fill = blur_fill(source, size, background.blur_amount or DEFAULT_BLUR_AMOUNT)
    elif kind == "image":
        if not isinstance(background.value, (bytes, str)):
            raise ValueError("Image background needs encoded bytes or a data: URL")
        fill = image_fill(background.value, size)
    else:
        raise ValueError(f"Unknown background kind: {kind}")

    if opts.shadow_intensity > 0:
        fill = _over(shadow_layer(subject[..., 3], opts.shadow_intensity, opts.shadow_offset), fill)
    logger.debug("Composed %s background at %dx%d", kind, w, h)
    return _over(subject, fill)
