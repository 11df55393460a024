import unittest

import numpy as np

from bg_removal.config import MAX_SAFE_PIXELS
from bg_removal.preprocess import compute_working_size, meta_to_dict, resize_to_working


class TestWorkingSize(unittest.TestCase):
    def _make_rgba(self, h: int, w: int) -> np.ndarray:
        # deterministic synthetic RGBA
        img = np.zeros((h, w, 4), dtype=np.uint8)
        img[..., 0] = 10
        img[..., 1] = 20
        img[..., 2] = 30
        img[..., 3] = 255
        return img

    def test_small_image_is_untouched(self):
        meta = compute_working_size(640, 480)
        self.assertEqual((meta.work_w, meta.work_h), (640, 480))
        self.assertEqual(meta.scale, 1.0)
        self.assertFalse(meta.downscaled)

    def test_wide_image_keeps_aspect_ratio(self):
        meta = compute_working_size(8000, 2000)
        self.assertLessEqual(meta.work_pixels, MAX_SAFE_PIXELS)
        self.assertTrue(meta.downscaled)
        self.assertAlmostEqual(meta.work_w / meta.work_h, 4.0, delta=0.01)

    def test_tall_image_keeps_aspect_ratio(self):
        meta = compute_working_size(2000, 8000)
        self.assertLessEqual(meta.work_pixels, MAX_SAFE_PIXELS)
        self.assertAlmostEqual(meta.work_h / meta.work_w, 4.0, delta=0.01)

    def test_caller_max_dimensions_win(self):
        meta = compute_working_size(1000, 500, max_dimensions=(200, 200))
        self.assertEqual((meta.work_w, meta.work_h), (200, 100))
        self.assertAlmostEqual(meta.scale, 0.2)

    def test_memory_ceiling_is_applied(self):
        # 4 bytes * 3 passes * 10_000 px = 120_000 bytes
        meta = compute_working_size(1000, 1000, memory_limit=120_000, passes=3)
        self.assertLessEqual(meta.work_pixels, 10_000)

    def test_pixel_ceiling_never_exceeded(self):
        dims = [
            (1, 1),
            (1, 10_000_000),
            (10_000_000, 1),
            (2049, 2049),
            (4096, 4096),
            (3, 7_000_000),
            (12_345, 6_789),
            (2048, 2048),
            (2047, 2050),
        ]
        for ceiling in (1, 7, 1000, MAX_SAFE_PIXELS):
            for w, h in dims:
                meta = compute_working_size(w, h, max_pixels=ceiling)
                self.assertGreaterEqual(meta.work_w, 1)
                self.assertGreaterEqual(meta.work_h, 1)
                self.assertLessEqual(meta.work_pixels, ceiling, msg=f"{w}x{h} ceiling={ceiling}")
                self.assertLessEqual(meta.work_w, w)
                self.assertLessEqual(meta.work_h, h)

    def test_invalid_sizes_raise(self):
        with self.assertRaises(ValueError):
            compute_working_size(0, 10)
        with self.assertRaises(ValueError):
            compute_working_size(10, 10, max_dimensions=(0, 10))
        with self.assertRaises(ValueError):
            compute_working_size(10, 10, max_pixels=0)

    def test_resize_to_working_shapes(self):
        img = self._make_rgba(400, 1000)
        meta = compute_working_size(1000, 400, max_dimensions=(500, 500))
        work = resize_to_working(img, meta)
        self.assertEqual(work.shape, (200, 500, 4))
        self.assertEqual(work.dtype, np.uint8)
        self.assertTrue((work[..., 3] == 255).all())

        same = compute_working_size(1000, 400)
        self.assertIs(resize_to_working(img, same), img)

    def test_resize_rejects_mismatched_meta(self):
        meta = compute_working_size(100, 100)
        with self.assertRaises(ValueError):
            resize_to_working(self._make_rgba(50, 50), meta)

    def test_meta_to_dict(self):
        d = meta_to_dict(compute_working_size(100, 50))
        self.assertEqual(d, {"orig_h": 50, "orig_w": 100, "work_h": 50, "work_w": 100, "scale": 1.0})


if __name__ == "__main__":
    unittest.main()
