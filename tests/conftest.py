import io

import numpy as np
import pytest
from PIL import Image


def make_square_scene(size: int = 100, square: int = 40) -> np.ndarray:
    """Uniform green background with a centred solid red square (RGBA)."""
    img = np.zeros((size, size, 4), dtype=np.uint8)
    img[..., 1] = 255
    img[..., 3] = 255
    lo = (size - square) // 2
    img[lo : lo + square, lo : lo + square, :3] = (255, 0, 0)
    return img


def make_uniform(size: int = 50, color=(128, 128, 128)) -> np.ndarray:
    img = np.zeros((size, size, 4), dtype=np.uint8)
    img[..., :3] = color
    img[..., 3] = 255
    return img


def encode_png(arr: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    return buf.getvalue()


def decode(data: bytes) -> np.ndarray:
    return np.array(Image.open(io.BytesIO(data)).convert("RGBA"))


@pytest.fixture
def square_scene() -> np.ndarray:
    return make_square_scene()


@pytest.fixture
def square_png(square_scene) -> bytes:
    return encode_png(square_scene)


@pytest.fixture
def noise_image() -> np.ndarray:
    rng = np.random.default_rng(1234)
    img = rng.integers(0, 256, size=(64, 80, 4), dtype=np.uint8)
    img[..., 3] = 255
    return img
