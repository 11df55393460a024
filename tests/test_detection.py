from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from bg_removal.contracts import Rect, Region
from bg_removal.detection import (
    cluster_points,
    detect_faces,
    detect_regions,
    find_background_regions,
    stamp_subject_mask,
)

from conftest import make_square_scene, make_uniform


def _skin_scene(size: int = 120) -> np.ndarray:
    img = make_uniform(size=size)
    img[40:70, 40:70, :3] = (200, 120, 90)
    return img


def _assert_inside(regions, h, w):
    for r in regions:
        b = r.bounds
        assert 0 <= b.x < w and 0 <= b.y < h
        assert b.x1 <= w and b.y1 <= h


def test_uniform_image_has_no_regions():
    result = detect_regions(make_uniform())
    assert result.regions == ()
    assert (result.subject_mask == 255).all()
    assert result.background_regions == (Rect(x=0, y=0, width=50, height=50),)


def test_square_is_detected_as_product():
    img = make_square_scene()
    result = detect_regions(img, algorithm="auto")
    products = [r for r in result.regions if r.label == "product"]
    assert len(products) == 1
    b = products[0].bounds
    assert b.x <= 30 and b.y <= 30 and b.x1 >= 70 and b.y1 >= 70
    assert b.area < 50 * 50
    assert (result.subject_mask[30:70, 30:70] == 0).all()
    assert result.subject_mask[5, 5] == 255


def test_portrait_routing_skips_generic_objects():
    result = detect_regions(make_square_scene(), algorithm="portrait")
    assert result.of_kind("object") == []


def test_skin_patch_becomes_face():
    img = _skin_scene()
    faces = detect_faces(img)
    assert len(faces) == 1
    b = faces[0].bounds
    assert 40 <= b.x and 40 <= b.y and b.x1 <= 70 and b.y1 <= 70
    assert faces[0].confidence == pytest.approx(1.0)


def test_object_routing_skips_faces():
    result = detect_regions(_skin_scene(), algorithm="object")
    assert result.of_kind("face") == []


@pytest.mark.parametrize("algorithm", ["auto", "portrait", "object", "precise"])
def test_region_bounds_stay_inside_image(algorithm, noise_image):
    for img in (noise_image, _skin_scene(), make_square_scene()):
        h, w = img.shape[:2]
        result = detect_regions(img, algorithm=algorithm)
        _assert_inside(result.regions, h, w)
        for rect in result.background_regions:
            assert rect.x1 <= w and rect.y1 <= h


def test_executor_gives_same_result():
    img = _skin_scene(size=200)
    img[140:170, 140:170, :3] = (190, 110, 80)
    serial = detect_regions(img)
    with ThreadPoolExecutor(max_workers=2) as pool:
        parallel = detect_regions(img, executor=pool)
    assert len(serial.of_kind("face")) == 2
    assert serial.regions == parallel.regions
    np.testing.assert_array_equal(serial.subject_mask, parallel.subject_mask)


def _pair(gap):
    labels, n = cluster_points(np.array([0, gap]), np.array([0, 0]), (10, 100), radius=30, stride=2)
    return labels, n


def test_cluster_points_links_at_radius():
    labels, n = _pair(30)
    assert n == 1
    assert labels[0] == labels[1]


@pytest.mark.parametrize("gap", [32, 34])
def test_cluster_points_splits_beyond_radius(gap):
    labels, n = _pair(gap)
    assert n == 2
    assert labels[0] != labels[1]


def test_cluster_points_chains_hops():
    xs = np.array([0, 30, 60, 92])
    labels, n = cluster_points(xs, np.zeros(4, dtype=np.int64), (10, 100), radius=30, stride=2)
    assert labels[0] == labels[1] == labels[2]
    assert labels[3] != labels[0]
    assert n == 2


def test_cluster_points_diagonal_gap():
    # (0,0) -> (18,24) is exactly 30px; (0,0) -> (20,24) is ~31.2px
    labels, _ = cluster_points(np.array([0, 18]), np.array([0, 24]), (40, 40), radius=30, stride=2)
    assert labels[0] == labels[1]
    labels, _ = cluster_points(np.array([0, 20]), np.array([0, 24]), (40, 40), radius=30, stride=2)
    assert labels[0] != labels[1]


def test_nearby_skin_patches_stay_separate_faces():
    img = make_uniform(size=140)
    img[40:70, 20:50, :3] = (200, 120, 90)
    # nearest samples: x=48 and x=82, 34px apart
    img[40:70, 82:112, :3] = (200, 120, 90)
    faces = detect_faces(img[..., :3])
    assert len(faces) == 2
    assert sorted(f.bounds.x for f in faces) == [20, 82]
    assert all(f.bounds.width == 29 for f in faces)


def test_stamp_and_background_regions():
    regions = [Region(kind="object", label="product", confidence=0.9, bounds=Rect(x=10, y=10, width=20, height=20))]
    mask = stamp_subject_mask(regions, (40, 40))
    assert (mask[10:30, 10:30] == 0).all()
    assert mask[0, 0] == 255
    rects = find_background_regions(mask)
    assert rects == [Rect(x=0, y=0, width=40, height=40)]


def test_background_regions_skip_enclosed_pockets():
    mask = np.zeros((60, 60), dtype=np.uint8)
    mask[:5, :] = 255  # border strip
    mask[20:40, 20:40] = 255  # enclosed pocket
    rects = find_background_regions(mask)
    assert rects == [Rect(x=0, y=0, width=60, height=5)]


def test_detect_regions_rejects_bad_shape():
    with pytest.raises(ValueError):
        detect_regions(np.zeros((10, 10), dtype=np.uint8))
