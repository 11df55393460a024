from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from tqdm import tqdm

from .config import FEATHER_RADIUS
from .contracts import BackgroundConfig, CompositingOptions, ProcessingOptions
from .errors import BackgroundRemovalError
from .pipeline import compose_background, remove_background


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff", ".gif"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def parse_background_arg(text: Optional[str]) -> BackgroundConfig:
    """
    "transparent" | "color:<css colour>" | "gradient:<linear-gradient(...)>" |
    "blur[:<sigma>]" | "image:<path>"
    """
    if not text or text == "transparent":
        return BackgroundConfig(kind="transparent")
    kind, _, value = text.partition(":")
    kind = kind.strip().lower()
    if kind == "color":
        return BackgroundConfig(kind="color", value=value)
    if kind == "gradient":
        return BackgroundConfig(kind="gradient", value=value)
    if kind == "blur":
        return BackgroundConfig(kind="blur", blur_amount=float(value) if value else None)
    if kind == "image":
        return BackgroundConfig(kind="image", value=Path(value).read_bytes())
    raise ValueError(f"Unknown background spec: {text!r}")


def _amount(value: int) -> bool | int:
    return value if value > 0 else False


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Heuristic background removal (no trained model).")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for RGBA images.")
    parser.add_argument(
        "--algorithm",
        default="auto",
        choices=["auto", "portrait", "object", "precise"],
        help="Detector routing (default: auto).",
    )
    parser.add_argument("--sensitivity", default=25, type=int, help="10-100, higher means fewer edges (default 25).")
    parser.add_argument("--feather", default=0, type=int, help="Edge feathering search radius in px, 1-100 (0 = off).")
    parser.add_argument("--detail", default=0, type=int, help="Detail preservation strength 0-100 (0 = off).")
    parser.add_argument("--smoothing", default=0, type=int, help="Alpha smoothing level 0-100 (0 = off).")
    parser.add_argument(
        "--background",
        default="transparent",
        type=str,
        help="transparent | color:#rrggbb | gradient:linear-gradient(...) | blur[:sigma] | image:<path>",
    )
    parser.add_argument("--shadow", default=0.0, type=float, help="Shadow intensity 0-1 (0 = off).")
    parser.add_argument("--format", default="png", choices=["png", "webp"], help="Output format.")
    parser.add_argument("--quality", default=95, type=int, help="Output quality 10-100 (webp).")
    parser.add_argument("--seed", default=0, type=int, help="Colour clustering seed.")
    parser.add_argument("--fail-fast", action="store_true", help="Stop at the first failing image.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    options = ProcessingOptions(
        primary_algorithm=args.algorithm,
        sensitivity=args.sensitivity,
        edge_feathering=args.feather > 0,
        feather_radius=args.feather if args.feather > 0 else FEATHER_RADIUS,
        detail_preservation=_amount(args.detail),
        smoothing_level=args.smoothing,
        output_format=args.format,
        quality=args.quality,
        seed=args.seed,
    )
    background = parse_background_arg(args.background)
    compositing = CompositingOptions(
        shadow_intensity=args.shadow,
        quality=args.quality,
        output_format=args.format,
    )

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    output_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = output_dir / "manifest.jsonl"
    failed = 0

    total0 = time.perf_counter()
    with open(manifest_path, "a", encoding="utf-8") as manifest_fp:
        for img_path in tqdm(images, desc="Removing backgrounds", unit="img"):
            rel = img_path.relative_to(input_dir)
            out_path = (output_dir / rel).with_suffix(f".{args.format}")
            out_path.parent.mkdir(parents=True, exist_ok=True)

            record = {"source_image": str(img_path), "output_image": str(out_path)}
            try:
                source = img_path.read_bytes()
                result = remove_background(source, options)
                data = result.output_bytes
                if background.kind != "transparent":
                    data = compose_background(data, background, compositing, original_bytes=source)
                out_path.write_bytes(data)
            except BackgroundRemovalError as e:
                failed += 1
                record.update({"status": "failed", "error": f"{type(e).__name__}: {e}"})
                manifest_fp.write(json.dumps(record, ensure_ascii=False) + "\n")
                manifest_fp.flush()
                print(f"{img_path.name}: FAILED {type(e).__name__}: {e}")
                if args.fail_fast:
                    raise
                continue

            record.update({"status": "ok", **result.to_dict()})
            manifest_fp.write(json.dumps(record, ensure_ascii=False) + "\n")
            manifest_fp.flush()

            t = result.timings
            print(
                f"{img_path.name}: total={t.total_s:.3f}s "
                f"(decode={t.decode_s:.3f}s detect={t.detect_s:.3f}s gen={t.generate_s:.3f}s "
                f"fuse={t.fuse_s:.3f}s refine={t.refine_s:.3f}s comp={t.composite_s:.3f}s "
                f"enc={t.encode_s:.3f}s) confidence={result.confidence:.2f} algo={result.algorithm}"
            )

    total1 = time.perf_counter()
    print(
        "Done.\n"
        f"- total: {len(images)}\n"
        f"- failed: {failed}\n"
        f"- elapsed_s: {total1 - total0:.2f}\n"
        f"- output: {output_dir.resolve()}\n"
        f"- manifest: {manifest_path.resolve()}"
    )
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
