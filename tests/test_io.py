import base64
import io

import numpy as np
import pytest
from PIL import Image

from bg_removal.errors import DecodeFailure, EncodeFailure, InputTooLarge, UnsupportedFormat
from bg_removal.io import check_input_size, decode_data_url, encode_rgba, load_rgba, open_image

from conftest import encode_png, make_uniform


def test_check_input_size():
    check_input_size(b"x" * 10, max_bytes=10)
    with pytest.raises(InputTooLarge):
        check_input_size(b"x" * 11, max_bytes=10)
    with pytest.raises(DecodeFailure):
        check_input_size(b"", max_bytes=10)
    with pytest.raises(DecodeFailure):
        check_input_size("not bytes", max_bytes=10)


def test_load_rgba_from_rgb_png():
    rgb = np.zeros((4, 6, 3), dtype=np.uint8)
    rgb[..., 0] = 9
    buf = io.BytesIO()
    Image.fromarray(rgb).save(buf, format="PNG")
    arr = load_rgba(buf.getvalue(), max_bytes=1 << 20)
    assert arr.shape == (4, 6, 4)
    assert (arr[..., 0] == 9).all()
    assert (arr[..., 3] == 255).all()


def test_garbage_is_decode_failure():
    with pytest.raises(DecodeFailure):
        open_image(b"\x00\x01 not an image at all")


def test_unsupported_input_format():
    buf = io.BytesIO()
    Image.new("RGBA", (16, 16)).save(buf, format="ICO")
    with pytest.raises(UnsupportedFormat):
        open_image(buf.getvalue())


def test_native_pixel_cap():
    with pytest.raises(InputTooLarge):
        open_image(encode_png(make_uniform(size=20)), max_pixels=399)


def test_encode_rgba_formats():
    rgba = make_uniform(size=8)
    png = encode_rgba(rgba, "png")
    assert Image.open(io.BytesIO(png)).format == "PNG"
    assert np.array_equal(np.array(Image.open(io.BytesIO(png))), rgba)
    webp = encode_rgba(rgba, "WEBP", quality=50)
    assert Image.open(io.BytesIO(webp)).format == "WEBP"
    with pytest.raises(UnsupportedFormat):
        encode_rgba(rgba, "gif")
    with pytest.raises(EncodeFailure):
        encode_rgba(rgba[..., :3], "png")


def test_decode_data_url():
    assert decode_data_url("data:image/png;base64," + base64.b64encode(b"abc").decode()) == b"abc"
    with pytest.raises(DecodeFailure):
        decode_data_url("https://example.com/x.png")
    with pytest.raises(DecodeFailure):
        decode_data_url("data:text/plain,hello")
    with pytest.raises(DecodeFailure):
        decode_data_url("data:image/png;base64,@@@")
