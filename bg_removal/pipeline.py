from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import numpy as np

from .composite import compose_rgba, inject_alpha, restore_to_original
from .config import (
    EDGE_PIXEL_DIFF,
    GENERATOR_NAMES,
    MASK_THRESHOLD,
    MEMORY_LIMIT_BYTES,
    MEMORY_PASSES,
    PROGRESS_STAGES,
    get_max_input_bytes,
    get_max_pixels,
    get_worker_count,
)
from .contracts import BackgroundConfig, CompositingOptions, ProcessingOptions, QualityMetrics, Region
from .detection import DetectionResult, detect_regions
from .errors import BackgroundRemovalError, ProcessingCancelled, ProcessingFailure
from .fusion import base_weights, fuse_masks
from .generators import GeneratedMask, run_generator
from .io import check_input_size, decode_rgba, encode_rgba, load_rgba, open_image
from .postprocess import refine_mask
from .preprocess import PreprocessMeta, compute_working_size, meta_to_dict, resize_to_working

logger = logging.getLogger(__name__)

MODEL_LABELS = {
    "edge": "edge-detection",
    "color": "color-clustering",
    "texture": "texture-analysis",
    "gradient": "gradient-flow",
    "object": "object-detection",
}


@dataclass(frozen=True)
class StageTimings:
    decode_s: float
    detect_s: float
    generate_s: float
    fuse_s: float
    refine_s: float
    composite_s: float
    encode_s: float
    total_s: float


@dataclass
class ProcessingResult:
    output_bytes: bytes
    confidence: float
    models_used: List[str]
    objects_detected: List[Region]
    quality_metrics: QualityMetrics
    algorithm: str
    meta: PreprocessMeta
    timings: StageTimings
    generator_confidences: Dict[str, float] = field(default_factory=dict)
    diagnostics: Dict[str, float] = field(default_factory=dict)
    # Working-resolution masks (0 = keep, 255 = remove).
    fused_mask: Optional[np.ndarray] = field(default=None, repr=False)
    mask: Optional[np.ndarray] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable diagnostics (no pixel data)."""
        return {
            "confidence": self.confidence,
            "models_used": list(self.models_used),
            "objects_detected": [r.model_dump() for r in self.objects_detected],
            "quality_metrics": self.quality_metrics.model_dump(),
            "algorithm": self.algorithm,
            "size": meta_to_dict(self.meta),
            "timings": asdict(self.timings),
            "generator_confidences": dict(self.generator_confidences),
            "diagnostics": dict(self.diagnostics),
            "output_bytes": len(self.output_bytes),
        }


class CancellationToken:
    """Cooperative cancellation flag, checked between stages and generator tasks."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise ProcessingCancelled(stage)


_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            _EXECUTOR = ThreadPoolExecutor(max_workers=get_worker_count(), thread_name_prefix="bg-removal")
    return _EXECUTOR


def quality_metrics(mask: np.ndarray) -> QualityMetrics:
    """
    Interior-only statistics of the final mask:
      - edge_accuracy: share of pixels with a neighbour differing by > 64
      - detail_preservation: share of foreground pixels that are not edges
      - background_cleanness: share of background pixels
    """
    h, w = mask.shape
    if h < 3 or w < 3:
        return QualityMetrics(edge_accuracy=0.0, detail_preservation=0.0, background_cleanness=0.0)
    m = mask.astype(np.int16)
    centre = m[1:-1, 1:-1]
    edge = np.zeros(centre.shape, dtype=bool)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            edge |= np.abs(m[1 + dy : h - 1 + dy, 1 + dx : w - 1 + dx] - centre) > EDGE_PIXEL_DIFF
    background = centre > MASK_THRESHOLD
    return QualityMetrics(
        edge_accuracy=float(edge.mean()),
        detail_preservation=float((~background & ~edge).mean()),
        background_cleanness=float(background.mean()),
    )


def resolve_algorithm(requested: str, detection: DetectionResult) -> str:
    if requested != "auto":
        return requested
    if detection.of_kind("face"):
        return "portrait"
    if detection.of_kind("object"):
        return "object"
    return "general"


class BackgroundRemovalPipeline:
    """
    Deterministic, linear pipeline:
      1) Validate + decode
      2) Govern working size
      3) Detect regions
      4) Generate masks (parallel)
      5) Fuse
      6) Refine
      7) Alpha composite + restore size
      8) Encode

    Any non-engine exception inside a stage becomes ProcessingFailure(stage).
    """

    def __init__(
        self,
        options: Optional[ProcessingOptions] = None,
        *,
        executor: Optional[Executor] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.options = options or ProcessingOptions()
        self._executor = executor
        self._token = cancel_token or CancellationToken()
        self._timings: Dict[str, float] = {}

    # -------------------------------------------------
    # observers
    # -------------------------------------------------

    def _progress(self, key: str) -> None:
        callback = self.options.progress_callback
        if callback is None:
            return
        percent, label = PROGRESS_STAGES[key]
        try:
            callback(percent, label)
        except Exception:
            logger.warning("Progress callback failed at %d%% (%s)", percent, label, exc_info=True)

    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        self._token.raise_if_cancelled(name)
        t0 = time.perf_counter()
        try:
            yield
        except BackgroundRemovalError:
            raise
        except Exception as e:
            logger.error("Stage '%s' failed: %s", name, e)
            raise ProcessingFailure(name, e) from e
        finally:
            self._timings[name] = self._timings.get(name, 0.0) + (time.perf_counter() - t0)

    # -------------------------------------------------
    # stages
    # -------------------------------------------------

    def _limits(self) -> Dict[str, int]:
        opts = self.options
        memory = opts.memory_limit_bytes or MEMORY_LIMIT_BYTES
        if opts.memory_optimized:
            memory //= 2
        return {
            "max_bytes": opts.max_input_bytes or get_max_input_bytes(),
            "max_pixels": opts.max_pixels or get_max_pixels(),
            "memory_limit": memory,
        }

    def _generate(self, rgba: np.ndarray, detection: DetectionResult, names: List[str]) -> Dict[str, GeneratedMask]:
        executor = self._executor or _get_executor()
        opts = self.options

        def task(name: str) -> GeneratedMask:
            self._token.raise_if_cancelled(f"generate:{name}")
            return run_generator(name, rgba, detection.subject_mask, opts.sensitivity, opts.seed)

        futures = {name: executor.submit(task, name) for name in names}
        try:
            return {name: futures[name].result() for name in names}
        finally:
            for f in futures.values():
                f.cancel()

    def run(self, image_bytes: bytes) -> ProcessingResult:
        opts = self.options
        limits = self._limits()
        t0 = time.perf_counter()
        self._timings = {}
        self._progress("init")

        with self._stage("decode"):
            rgba_native = load_rgba(image_bytes, limits["max_bytes"])
            orig_h, orig_w = rgba_native.shape[:2]
            max_dims = None
            if opts.max_dimensions is not None:
                max_dims = (opts.max_dimensions.width, opts.max_dimensions.height)

        with self._stage("govern"):
            meta = compute_working_size(
                orig_w,
                orig_h,
                max_dimensions=max_dims,
                max_pixels=limits["max_pixels"],
                memory_limit=limits["memory_limit"],
                passes=MEMORY_PASSES,
            )
            rgba = resize_to_working(rgba_native, meta)
        logger.debug("Working size %dx%d (scale %.3f)", meta.work_w, meta.work_h, meta.scale)
        self._progress("prepare")

        with self._stage("detect"):
            detection = detect_regions(
                rgba,
                algorithm=opts.primary_algorithm,
                sensitivity=opts.sensitivity,
                executor=self._executor or _get_executor(),
            )
        self._progress("detect")

        weights = base_weights(opts.fusion_weights)
        names = [n for n in GENERATOR_NAMES if weights[n] > 0]
        self._progress("generate")
        with self._stage("generate"):
            generated = self._generate(rgba, detection, names)
        self._progress("generated")

        confidences = {name: g.confidence for name, g in generated.items()}
        with self._stage("fuse"):
            fused = fuse_masks({n: g.mask for n, g in generated.items()}, confidences, opts.fusion_weights)
        self._progress("fuse")

        with self._stage("refine"):
            refined = refine_mask(
                fused,
                closing=opts.primary_algorithm == "precise",
                feather_amount=opts.feather_amount,
                detail_strength=opts.detail_strength,
                smoothing_level=opts.smoothing_level,
            )
        self._progress("refine")

        with self._stage("composite"):
            out = restore_to_original(inject_alpha(rgba, refined), meta)
        self._progress("finalize")

        with self._stage("encode"):
            output_bytes = encode_rgba(out, opts.output_format, opts.quality)

        diagnostics: Dict[str, float] = {}
        for g in generated.values():
            diagnostics.update({f"{g.name}_{k}": v for k, v in g.diagnostics.items()})

        timings = StageTimings(
            decode_s=self._timings.get("decode", 0.0) + self._timings.get("govern", 0.0),
            detect_s=self._timings.get("detect", 0.0),
            generate_s=self._timings.get("generate", 0.0),
            fuse_s=self._timings.get("fuse", 0.0),
            refine_s=self._timings.get("refine", 0.0),
            composite_s=self._timings.get("composite", 0.0),
            encode_s=self._timings.get("encode", 0.0),
            total_s=time.perf_counter() - t0,
        )
        algorithm = resolve_algorithm(opts.primary_algorithm, detection)
        result = ProcessingResult(
            output_bytes=output_bytes,
            confidence=round(float(np.mean(list(confidences.values()))), 2),
            models_used=["region-detection"] + [MODEL_LABELS[n] for n in names],
            objects_detected=list(detection.regions),
            quality_metrics=quality_metrics(refined),
            algorithm=algorithm,
            meta=meta,
            timings=timings,
            generator_confidences=confidences,
            diagnostics=diagnostics,
            fused_mask=fused,
            mask=refined,
        )
        self._progress("done")
        logger.info(
            "Removed background %dx%d (%s): confidence=%.2f regions=%d total=%.3fs",
            meta.orig_w,
            meta.orig_h,
            algorithm,
            result.confidence,
            len(result.objects_detected),
            timings.total_s,
        )
        return result


def remove_background(
    image_bytes: bytes,
    options: Optional[ProcessingOptions] = None,
    *,
    cancel_token: Optional[CancellationToken] = None,
    executor: Optional[Executor] = None,
) -> ProcessingResult:
    """Remove the background of one encoded image. Raises a BackgroundRemovalError on failure."""
    return BackgroundRemovalPipeline(options, executor=executor, cancel_token=cancel_token).run(image_bytes)


def compose_background(
    subject_bytes: bytes,
    background: BackgroundConfig,
    options: Optional[CompositingOptions] = None,
    *,
    original_bytes: Optional[bytes] = None,
) -> bytes:
    """
    Draw a new background behind an RGBA subject and re-encode it.

    A transparent background returns the input bytes untouched once they are
    validated as a supported image.
    """
    opts = options or CompositingOptions()
    max_bytes = get_max_input_bytes()
    check_input_size(subject_bytes, max_bytes)

    if background.kind == "transparent":
        open_image(subject_bytes)
        return bytes(subject_bytes)

    subject = decode_rgba(open_image(subject_bytes))
    original = None
    if original_bytes is not None:
        original = load_rgba(original_bytes, max_bytes)

    try:
        composed = compose_rgba(subject, background, opts, original=original)
    except BackgroundRemovalError:
        raise
    except Exception as e:
        raise ProcessingFailure("compose", e) from e
    return encode_rgba(composed, opts.output_format, opts.quality)
