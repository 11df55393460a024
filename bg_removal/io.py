from __future__ import annotations

import base64
import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from .config import ALLOWED_INPUT_FORMATS, MAX_NATIVE_PIXELS, OUTPUT_FORMATS
from .errors import DecodeFailure, EncodeFailure, InputTooLarge, UnsupportedFormat


def check_input_size(image_bytes: bytes, max_bytes: int) -> None:
    """Reject oversized payloads before anything touches the decoder."""
    if not isinstance(image_bytes, (bytes, bytearray, memoryview)):
        raise DecodeFailure(f"Expected image bytes, got {type(image_bytes).__name__}")
    size = len(image_bytes)
    if size > max_bytes:
        raise InputTooLarge(
            f"Image too large: {size} bytes exceeds the {max_bytes} byte limit"
        )
    if size == 0:
        raise DecodeFailure("Empty image payload")


def open_image(image_bytes: bytes, max_pixels: int = MAX_NATIVE_PIXELS) -> Image.Image:
    """
    Open an image lazily (header only) and validate format + native size.

    Pixel data is not decoded here, so oversized images are rejected before
    any buffer is allocated.
    """
    try:
        img = Image.open(io.BytesIO(bytes(image_bytes)))
    except UnidentifiedImageError as e:
        raise DecodeFailure("Failed to load image: unrecognized data") from e
    except Image.DecompressionBombError as e:
        raise InputTooLarge(str(e)) from e
    except (OSError, ValueError) as e:
        raise DecodeFailure(f"Failed to load image: {e}") from e

    if img.format not in ALLOWED_INPUT_FORMATS:
        raise UnsupportedFormat(f"Unsupported image format: {img.format}")

    w, h = img.size
    if w <= 0 or h <= 0:
        raise DecodeFailure(f"Invalid image size: {(w, h)}")
    if w * h > max_pixels:
        raise InputTooLarge(f"Image has {w * h} pixels; limit is {max_pixels}")
    return img


def decode_rgba(img: Image.Image) -> np.ndarray:
    """Decode an opened image to an RGBA uint8 array of shape (H, W, 4)."""
    try:
        img.load()
        rgba = img.convert("RGBA")
    except Image.DecompressionBombError as e:
        raise InputTooLarge(str(e)) from e
    except (OSError, ValueError, SyntaxError) as e:
        raise DecodeFailure(f"Failed to decode image: {e}") from e

    arr = np.array(rgba, dtype=np.uint8)
    if arr.ndim != 3 or arr.shape[2] != 4:
        raise DecodeFailure(f"Expected RGBA image array, got shape={arr.shape}")
    return arr


def load_rgba(image_bytes: bytes, max_bytes: int, max_pixels: int = MAX_NATIVE_PIXELS) -> np.ndarray:
    check_input_size(image_bytes, max_bytes)
    return decode_rgba(open_image(image_bytes, max_pixels=max_pixels))


def encode_rgba(rgba: np.ndarray, output_format: str = "png", quality: int = 95) -> bytes:
    """
    Serialize an RGBA buffer. PNG is lossless; WebP honours quality.
    """
    fmt = output_format.lower()
    if fmt not in OUTPUT_FORMATS:
        raise UnsupportedFormat(f"Unsupported output format: {output_format}")
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
        raise EncodeFailure(f"Expected uint8 RGBA buffer (H,W,4), got {rgba.shape} {rgba.dtype}")

    buf = io.BytesIO()
    try:
        img = Image.fromarray(rgba)
        if fmt == "png":
            img.save(buf, format="PNG", optimize=False)
        else:
            img.save(buf, format="WEBP", quality=int(quality), method=4)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeFailure(f"Failed to encode {fmt}: {e}") from e
    return buf.getvalue()


def decode_data_url(value: str) -> bytes:
    """
    Decode a data: URL ("data:image/png;base64,....") to raw bytes.
    """
    if not value.startswith("data:"):
        raise DecodeFailure("Background image must be bytes or a data: URL")
    header, _, payload = value.partition(",")
    if ";base64" not in header:
        raise DecodeFailure("Only base64 data: URLs are supported")
    try:
        return base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise DecodeFailure(f"Invalid base64 payload: {e}") from e
