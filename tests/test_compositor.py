import unittest

import cv2
import numpy as np

from core.capture import COOLDOWN, IDLE, CountingDown
from core.compositor import (
    BACKGROUND_BLUR,
    BACKGROUND_IMAGE,
    BACKGROUND_NONE,
    FrameCompositor,
    ResolvedBackground,
    Viewport,
    letterbox_rect,
)

CANVAS = (160, 120)
VIEWPORT = Viewport(40, 30, 40, 60)


def _frame(value=120):
    return np.full((CANVAS[1], CANVAS[0], 3), value, dtype=np.uint8)


def _full_mask(value=255):
    return np.full((CANVAS[1], CANVAS[0]), value, dtype=np.uint8)


def _compositor(**kwargs):
    return FrameCompositor(CANVAS, VIEWPORT, **kwargs)


class TestLetterbox(unittest.TestCase):
    def test_wide_image_fits_width(self):
        self.assertEqual(letterbox_rect((200, 100), (100, 100), 0.8), (10, 30, 80, 40))

    def test_tall_image_fits_height(self):
        self.assertEqual(letterbox_rect((100, 200), (100, 100), 0.8), (30, 10, 40, 80))


class TestFrameCompositor(unittest.TestCase):
    def test_none_out_of_range_is_plain_frame(self):
        c = _compositor()
        frame = _frame()
        out = c.compose(frame, _full_mask(), None, in_range=False, state=IDLE)
        self.assertEqual(out.background_kind, BACKGROUND_NONE)
        self.assertFalse(out.subject_drawn)
        self.assertFalse(out.overlay_drawn)
        np.testing.assert_array_equal(out.image, frame)

    def test_original_is_untouched_copy(self):
        c = _compositor()
        frame = _frame()
        out = c.compose(frame, _full_mask(), None, in_range=True, state=CountingDown(3))
        np.testing.assert_array_equal(out.original, frame)
        self.assertIsNot(out.original, frame)
        out.image[:] = 0
        self.assertTrue((out.original == 120).all())
        self.assertTrue((frame == 120).all())

    def test_frame_resized_to_canvas(self):
        c = _compositor()
        small = np.full((60, 80, 3), 50, dtype=np.uint8)
        out = c.compose(small, None, None, in_range=False, state=IDLE)
        self.assertEqual(out.image.shape, (CANVAS[1], CANVAS[0], 3))

    def test_grayscale_and_bgra_frames(self):
        c = _compositor()
        gray = np.full((CANVAS[1], CANVAS[0]), 90, dtype=np.uint8)
        self.assertEqual(c.prepare_frame(gray).shape, (CANVAS[1], CANVAS[0], 3))
        bgra = np.zeros((CANVAS[1], CANVAS[0], 4), dtype=np.uint8)
        self.assertEqual(c.prepare_frame(bgra).shape, (CANVAS[1], CANVAS[0], 3))

    def test_image_background_letterboxed_with_subject_in_viewport(self):
        c = _compositor()
        bg_img = np.full((50, 100, 3), 200, dtype=np.uint8)
        bg = ResolvedBackground(kind=BACKGROUND_IMAGE, image=bg_img, background_id="beach")
        out = c.compose(_frame(10), _full_mask(), bg, in_range=True, state=IDLE)
        self.assertEqual(out.background_kind, BACKGROUND_IMAGE)
        self.assertTrue(out.subject_drawn)
        # Corner stays letterbox black.
        self.assertEqual(out.image[0, 0].tolist(), [0, 0, 0])
        # Viewport shows the subject.
        vp = VIEWPORT
        self.assertTrue((out.image[vp.y : vp.y + vp.height, vp.x : vp.x + vp.width] == 10).all())
        # Letterboxed area outside the viewport shows the background image.
        self.assertEqual(out.image[CANVAS[1] // 2, 100].tolist(), [200, 200, 200])

    def test_image_background_without_subject_when_out_of_range(self):
        c = _compositor()
        bg_img = np.full((120, 160, 3), 200, dtype=np.uint8)
        bg = ResolvedBackground(kind=BACKGROUND_IMAGE, image=bg_img, background_id="wall")
        out = c.compose(_frame(10), _full_mask(), bg, in_range=False, state=IDLE)
        self.assertFalse(out.subject_drawn)
        self.assertEqual(out.image[CANVAS[1] // 2, CANVAS[0] // 2].tolist(), [200, 200, 200])

    def test_mask_threshold_selects_subject_pixels(self):
        c = _compositor()
        bg_img = np.full((120, 160, 3), 200, dtype=np.uint8)
        bg = ResolvedBackground(kind=BACKGROUND_IMAGE, image=bg_img)
        out = c.compose(_frame(10), _full_mask(200), bg, in_range=True, state=IDLE)
        vp = VIEWPORT
        # Confidence 200 is not above the threshold: nothing of the subject shows.
        self.assertTrue((out.image[vp.y : vp.y + vp.height, vp.x : vp.x + vp.width] == 200).all())

    def test_blur_background_keeps_subject_out_of_range(self):
        c = _compositor()
        frame = _frame(0)
        frame[:, ::2] = 255
        bg = ResolvedBackground(kind=BACKGROUND_BLUR, background_id="blur")
        out = c.compose(frame, _full_mask(), bg, in_range=False, state=IDLE)
        self.assertEqual(out.background_kind, BACKGROUND_BLUR)
        self.assertTrue(out.subject_drawn)
        # Stripes are smoothed out away from the edges.
        self.assertLess(int(out.image[5, 120].max()) - int(out.image[5, 121].min()), 64)
        self.assertFalse(np.array_equal(out.image[:, :VIEWPORT.x], frame[:, :VIEWPORT.x]))
        # Masked subject pixels are the raw frame scaled into the viewport.
        vp = VIEWPORT
        expected = cv2.resize(frame, (vp.width, vp.height), interpolation=cv2.INTER_AREA)
        np.testing.assert_array_equal(
            out.image[vp.y : vp.y + vp.height, vp.x : vp.x + vp.width], expected
        )

    def test_blur_background_respects_mask(self):
        c = _compositor()
        frame = _frame(0)
        frame[50:70, 70:90] = 255
        bg = ResolvedBackground(kind=BACKGROUND_BLUR, background_id="blur")
        blurred = c.compose(frame, _full_mask(0), bg, in_range=True, state=IDLE).image
        out = c.compose(frame, _full_mask(), bg, in_range=True, state=IDLE)
        vp = VIEWPORT
        # Outside the viewport both renders share the same blurred background.
        np.testing.assert_array_equal(out.image[:, : vp.x], blurred[:, : vp.x])
        # The bright square lands sharp at the viewport centre only where the mask keeps it.
        self.assertEqual(out.image[vp.y + 30, vp.x + 20].tolist(), [255, 255, 255])
        self.assertLess(int(blurred[vp.y + 30, vp.x + 20].max()), 255)

    def test_image_kind_without_pixels_degrades_to_none(self):
        c = _compositor()
        bg = ResolvedBackground(kind=BACKGROUND_IMAGE, image=None, background_id="gone")
        out = c.compose(_frame(), _full_mask(), bg, in_range=False, state=IDLE)
        self.assertEqual(out.background_kind, BACKGROUND_NONE)

    def test_unreadable_mask_skips_subject(self):
        c = _compositor()
        out = c.compose(_frame(), "not a mask", None, in_range=True, state=IDLE)
        self.assertFalse(out.subject_drawn)

    def test_countdown_overlay_only_while_counting(self):
        c = _compositor()
        frame = _frame(200)
        out = c.compose(frame, None, None, in_range=False, state=CountingDown(2))
        self.assertTrue(out.overlay_drawn)
        self.assertEqual(out.countdown, 2)
        # Canvas corner is dimmed by half.
        self.assertEqual(out.image[0, 0].tolist(), [100, 100, 100])
        plain = c.compose(frame, None, None, in_range=False, state=COOLDOWN)
        self.assertFalse(plain.overlay_drawn)
        self.assertIsNone(plain.countdown)

    def test_viewport_must_fit_canvas(self):
        with self.assertRaises(ValueError):
            FrameCompositor(CANVAS, Viewport(150, 0, 20, 20))


if __name__ == "__main__":
    unittest.main()
