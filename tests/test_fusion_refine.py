import numpy as np
import pytest

from bg_removal.fusion import base_weights, fuse_masks, fusion_weights
from bg_removal.pipeline import quality_metrics
from bg_removal.postprocess import (
    boost_detail,
    close_mask,
    feather_mask,
    open_mask,
    refine_mask,
    smooth_mask,
)

ALL_CONFIDENT = {"edge": 1.0, "color": 1.0, "texture": 1.0, "gradient": 1.0, "object": 1.0}


def test_weights_match_base_when_confidences_equal():
    weights = fusion_weights(ALL_CONFIDENT)
    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights["edge"] == pytest.approx(0.25)
    assert weights["object"] == pytest.approx(0.20)


def test_low_confidence_shrinks_weight():
    conf = dict(ALL_CONFIDENT, texture=0.0)
    weights = fusion_weights(conf)
    # 0.15 * 0.5 against 0.85 * 1.5
    assert weights["texture"] == pytest.approx(0.075 / (0.075 + 0.85 * 1.5))
    assert sum(weights.values()) == pytest.approx(1.0)


def test_overrides_and_missing_generators():
    weights = fusion_weights({"edge": 1.0, "object": 1.0}, overrides={"edge": 0.5})
    assert set(weights) == {"edge", "object"}
    assert weights["edge"] == pytest.approx(0.5 / 0.7)
    with pytest.raises(ValueError):
        base_weights({"nope": 1.0})
    with pytest.raises(ValueError):
        fusion_weights({"edge": 1.0}, overrides={"edge": 0.0})


def test_fuse_masks_rounds_and_stays_in_range():
    rng = np.random.default_rng(0)
    masks = {name: rng.integers(0, 256, size=(17, 23), dtype=np.uint8) for name in ALL_CONFIDENT}
    conf = {name: float(rng.random()) for name in ALL_CONFIDENT}
    fused = fuse_masks(masks, conf)
    assert fused.dtype == np.uint8
    assert fused.shape == (17, 23)
    np.testing.assert_array_equal(fused, fuse_masks(masks, conf))


def test_fuse_identical_masks_is_identity():
    mask = np.array([[0, 128, 255]], dtype=np.uint8)
    fused = fuse_masks({n: mask for n in ALL_CONFIDENT}, ALL_CONFIDENT)
    np.testing.assert_array_equal(fused, mask)


def test_fuse_rejects_mismatched_inputs():
    a = np.zeros((4, 4), dtype=np.uint8)
    with pytest.raises(ValueError):
        fuse_masks({}, {})
    with pytest.raises(ValueError):
        fuse_masks({"edge": a}, {"color": 1.0})
    with pytest.raises(ValueError):
        fuse_masks({"edge": a, "color": np.zeros((3, 3), dtype=np.uint8)}, {"edge": 1.0, "color": 1.0})


def test_opening_removes_background_speck():
    mask = np.zeros((9, 9), dtype=np.uint8)
    mask[4, 4] = 255
    assert (open_mask(mask) == 0).all()


def test_closing_fills_foreground_hole():
    mask = np.full((9, 9), 255, dtype=np.uint8)
    mask[4, 4] = 0
    assert (close_mask(mask) == 255).all()


def test_feathering_ramps_near_subject():
    mask = np.full((40, 40), 255, dtype=np.uint8)
    mask[:, :10] = 0
    out = feather_mask(mask, radius=15)
    assert (out[:, :10] == 0).all()
    # one pixel away: alpha = 255 * (1 - 1/15) = 238
    assert out[20, 10] == 255 - 238
    assert (out[:, 25:] == 255).all()
    assert (np.diff(out[20, 10:].astype(int)) >= 0).all()


def test_feathering_without_foreground_is_noop():
    mask = np.full((5, 5), 255, dtype=np.uint8)
    np.testing.assert_array_equal(feather_mask(mask), mask)


def test_detail_boost_only_touches_foreground():
    mask = np.array([[55, 200]], dtype=np.uint8)
    out = boost_detail(mask, strength=100)
    # alpha 200 * 1.1 = 220
    assert out[0, 0] == 35
    assert out[0, 1] == 200
    assert boost_detail(np.array([[5]], dtype=np.uint8), 100)[0, 0] == 0


def test_smoothing_keeps_uniform_mask_and_softens_step():
    flat = np.full((12, 12), 77, dtype=np.uint8)
    np.testing.assert_array_equal(smooth_mask(flat, 30), flat)

    step = np.zeros((12, 12), dtype=np.uint8)
    step[:, 6:] = 255
    out = smooth_mask(step, 30)
    assert 0 < out[6, 5] < 255
    assert out[6, 0] < out[6, 5] < out[6, 6] < out[6, 11]


def test_refine_defaults_only_open():
    rng = np.random.default_rng(3)
    mask = rng.integers(0, 256, size=(20, 20), dtype=np.uint8)
    np.testing.assert_array_equal(refine_mask(mask), open_mask(mask))
    full = refine_mask(mask, closing=True, feather_amount=5, detail_strength=50, smoothing_level=20)
    assert full.dtype == np.uint8 and full.shape == mask.shape


def test_refiner_rejects_bad_masks():
    with pytest.raises(ValueError):
        open_mask(np.zeros((3, 3, 1), dtype=np.uint8))
    with pytest.raises(ValueError):
        open_mask(np.zeros((3, 3), dtype=np.float32))


def test_quality_metrics():
    mask = np.full((10, 10), 255, dtype=np.uint8)
    mask[:, :5] = 0
    q = quality_metrics(mask)
    # interior is 8x8; columns 4 and 5 border the step
    assert q.edge_accuracy == pytest.approx(16 / 64)
    assert q.background_cleanness == pytest.approx(32 / 64)
    assert q.detail_preservation == pytest.approx(24 / 64)
    tiny = quality_metrics(np.zeros((2, 2), dtype=np.uint8))
    assert tiny.edge_accuracy == 0.0
