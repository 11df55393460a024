import base64
import io

import numpy as np
import pytest
from PIL import Image

from bg_removal.composite import (
    compose_rgba,
    gradient_fill,
    inject_alpha,
    parse_color,
    parse_gradient,
    restore_to_original,
    shadow_layer,
)
from bg_removal.contracts import BackgroundConfig, CompositingOptions
from bg_removal.errors import DecodeFailure, ProcessingFailure
from bg_removal.pipeline import compose_background
from bg_removal.preprocess import compute_working_size

from conftest import decode, encode_png


def _transparent(size: int = 10) -> np.ndarray:
    return np.zeros((size, size, 4), dtype=np.uint8)


def _subject_with_dot(size: int = 20) -> np.ndarray:
    img = _transparent(size)
    img[5:10, 5:10] = (0, 0, 255, 255)
    return img


def test_inject_alpha_inverts_mask():
    rgba = np.full((2, 2, 4), 50, dtype=np.uint8)
    mask = np.array([[0, 255], [100, 30]], dtype=np.uint8)
    out = inject_alpha(rgba, mask)
    np.testing.assert_array_equal(out[..., 3], [[255, 0], [155, 225]])
    np.testing.assert_array_equal(out[..., :3], rgba[..., :3])
    assert rgba[0, 0, 3] == 50
    with pytest.raises(ValueError):
        inject_alpha(rgba, mask[:1])


def test_restore_to_original_upsamples():
    meta = compute_working_size(100, 60, max_dimensions=(50, 50))
    work = np.full((meta.work_h, meta.work_w, 4), 200, dtype=np.uint8)
    out = restore_to_original(work, meta)
    assert out.shape == (60, 100, 4)
    assert (out == 200).all()


def test_color_background_is_exact():
    data = compose_background(encode_png(_transparent()), BackgroundConfig(kind="color", value="#ff0000"))
    out = decode(data)
    assert out.shape == (10, 10, 4)
    assert (out == np.array([255, 0, 0, 255], dtype=np.uint8)).all()


def test_transparent_background_returns_same_bytes():
    src = encode_png(_subject_with_dot())
    assert compose_background(src, BackgroundConfig(kind="transparent")) == src


def test_transparent_background_still_validates_input():
    with pytest.raises(DecodeFailure):
        compose_background(b"definitely not an image", BackgroundConfig())


def test_subject_stays_on_top():
    out = compose_rgba(_subject_with_dot(), BackgroundConfig(kind="color", value="white"))
    assert tuple(out[7, 7]) == (0, 0, 255, 255)
    assert tuple(out[0, 0]) == (255, 255, 255, 255)


def test_parse_color():
    assert parse_color("#f00") == (255, 0, 0, 255)
    assert parse_color("rgb(1, 2, 3)") == (1, 2, 3, 255)
    with pytest.raises(ValueError):
        parse_color("not-a-colour")


def test_parse_css_gradient():
    spec = parse_gradient("linear-gradient(135deg, #667eea 0%, #764ba2 100%)")
    assert spec.angle == pytest.approx(135.0)
    assert spec.colors == ((0x66, 0x7E, 0xEA, 255), (0x76, 0x4B, 0xA2, 255))
    assert spec.positions == (0.0, 1.0)


def test_parse_gradient_stop_list_defaults():
    spec = parse_gradient(["red", "rgb(0, 255, 0)", "blue"])
    assert spec.angle == pytest.approx(180.0)
    assert spec.positions == pytest.approx((0.0, 0.5, 1.0))
    spec = parse_gradient("linear-gradient(to right, black, white 80%)")
    assert spec.angle == pytest.approx(90.0)
    assert spec.positions == pytest.approx((0.0, 0.8))
    with pytest.raises(ValueError):
        parse_gradient("radial-gradient(red, blue)")
    with pytest.raises(ValueError):
        parse_gradient("linear-gradient(45deg)")


def test_gradient_fill_top_to_bottom():
    fill = gradient_fill((20, 100), parse_gradient(["black", "white"]))
    assert fill.shape == (100, 20, 4)
    assert fill[0, 10, 0] <= 3
    assert fill[-1, 10, 0] >= 252
    assert (fill[..., 3] == 255).all()
    column = fill[:, 10, 0].astype(int)
    assert (np.diff(column) >= 0).all()


def test_gradient_fill_left_to_right():
    fill = gradient_fill((100, 10), parse_gradient("linear-gradient(90deg, black, white)"))
    assert fill[5, 0, 0] <= 3
    assert fill[5, -1, 0] >= 252


def test_blur_background_is_opaque():
    subject = _subject_with_dot()
    out = compose_rgba(subject, BackgroundConfig(kind="blur", blur_amount=2))
    assert (out[..., 3] == 255).all()


def test_blur_background_uses_original_when_given():
    subject = _transparent(20)
    original = np.zeros((20, 20, 4), dtype=np.uint8)
    original[...] = (0, 200, 0, 255)
    out = compose_rgba(subject, BackgroundConfig(kind="blur"), original=original)
    assert (out[..., 1] == 200).all()


def test_image_background_from_data_url():
    bg = np.zeros((30, 60, 4), dtype=np.uint8)
    bg[...] = (10, 20, 30, 255)
    url = "data:image/png;base64," + base64.b64encode(encode_png(bg)).decode("ascii")
    out = compose_rgba(_transparent(20), BackgroundConfig(kind="image", value=url))
    assert out.shape == (20, 20, 4)
    assert np.abs(out.astype(int) - [10, 20, 30, 255]).max() <= 1


def test_shadow_darkens_offset_area():
    subject = _subject_with_dot(40)
    plain = compose_rgba(subject, BackgroundConfig(kind="color", value="white"))
    shadowed = compose_rgba(
        subject,
        BackgroundConfig(kind="color", value="white"),
        CompositingOptions(shadow_intensity=0.8, shadow_offset=6),
    )
    # just below-right of the dot, outside it
    assert shadowed[13, 13, 0] < plain[13, 13, 0]
    assert tuple(shadowed[7, 7]) == (0, 0, 255, 255)
    assert tuple(shadowed[35, 1]) == (255, 255, 255, 255)


def test_shadow_layer_is_shifted():
    alpha = np.zeros((20, 20), dtype=np.uint8)
    alpha[0:4, 0:4] = 255
    layer = shadow_layer(alpha, intensity=1.0, offset=5, sigma=0.5)
    assert layer[6, 6, 3] > 200
    assert layer[1, 1, 3] == 0
    assert (layer[..., :3] == 0).all()


def test_invalid_colour_is_a_processing_failure():
    with pytest.raises(ProcessingFailure) as exc:
        compose_background(encode_png(_transparent()), BackgroundConfig(kind="color", value="nope"))
    assert exc.value.stage == "compose"


def test_webp_output():
    data = compose_background(
        encode_png(_transparent()),
        BackgroundConfig(kind="color", value="#00ff00"),
        CompositingOptions(output_format="webp", quality=80),
    )
    assert Image.open(io.BytesIO(data)).format == "WEBP"
