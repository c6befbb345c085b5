import unittest

import numpy as np

from core.motion import MotionDetector, detect_motion
from core.stillness import StillnessTracker


def _frame(value=0, shape=(10, 10, 3)):
    return np.full(shape, value, dtype=np.uint8)


class TestMotionDetector(unittest.TestCase):
    def test_no_previous_frame_means_no_motion(self):
        sample = detect_motion(_frame(), None)
        self.assertFalse(sample.motion)
        self.assertFalse(sample.has_history)

    def test_identical_frames(self):
        sample = detect_motion(_frame(50), _frame(50))
        self.assertFalse(sample.motion)
        self.assertEqual(sample.ratio, 0.0)

    def test_shape_mismatch_is_motion(self):
        sample = detect_motion(_frame(shape=(10, 10, 3)), _frame(shape=(20, 10, 3)))
        self.assertTrue(sample.motion)
        self.assertEqual(sample.ratio, 1.0)

    def test_pixel_delta_is_strict(self):
        prev = _frame(100)
        cur = _frame(100)
        cur[0, 0, 1] = 130  # delta 30 is not > 30
        self.assertEqual(detect_motion(cur, prev).ratio, 0.0)
        cur[0, 0, 1] = 131
        self.assertAlmostEqual(detect_motion(cur, prev).ratio, 0.01)

    def test_no_uint8_wraparound(self):
        prev = _frame(200)
        cur = _frame(10)
        self.assertEqual(detect_motion(cur, prev).ratio, 1.0)

    def test_alpha_channel_ignored(self):
        prev = _frame(0, shape=(10, 10, 4))
        cur = prev.copy()
        cur[:, :, 3] = 255
        self.assertFalse(detect_motion(cur, prev).motion)

    def test_threshold_is_strict(self):
        prev = _frame(0)
        cur = _frame(0)
        cur[0, :2] = 255  # 2 of 100 pixels = 0.02, not > 0.02
        self.assertFalse(detect_motion(cur, prev, threshold=0.02).motion)
        cur[0, 2] = 255
        self.assertTrue(detect_motion(cur, prev, threshold=0.02).motion)

    def test_detector_validates_params(self):
        with self.assertRaises(ValueError):
            MotionDetector(threshold=0.0)
        with self.assertRaises(ValueError):
            MotionDetector(pixel_delta=300)


class TestStillnessTracker(unittest.TestCase):
    def test_progress_accumulates_and_fires_once(self):
        t = StillnessTracker(duration_ms=2000)
        self.assertFalse(t.update(False, 1000, can_trigger=True))
        self.assertEqual(t.progress, 0.0)
        self.assertFalse(t.update(False, 2000, can_trigger=True))
        self.assertAlmostEqual(t.progress, 0.5)
        self.assertTrue(t.update(False, 3000, can_trigger=True))
        self.assertTrue(t.is_still)
        self.assertFalse(t.update(False, 4000, can_trigger=True))
        self.assertEqual(t.progress, 1.0)

    def test_motion_resets_episode(self):
        t = StillnessTracker(duration_ms=1000)
        t.update(False, 100, can_trigger=True)
        self.assertTrue(t.update(False, 1100, can_trigger=True))
        self.assertFalse(t.update(True, 1200, can_trigger=True))
        self.assertFalse(t.is_still)
        self.assertEqual(t.progress, 0.0)
        t.update(False, 1300, can_trigger=True)
        self.assertTrue(t.update(False, 2300, can_trigger=True))

    def test_waits_for_capture_machine(self):
        t = StillnessTracker(duration_ms=1000)
        t.update(False, 100, can_trigger=False)
        self.assertFalse(t.update(False, 1500, can_trigger=False))
        self.assertEqual(t.progress, 1.0)
        self.assertFalse(t.is_still)
        # Machine back to idle while the subject is still holding the pose.
        self.assertTrue(t.update(False, 1600, can_trigger=True))

    def test_latch_blocks_refire_until_motion(self):
        t = StillnessTracker(duration_ms=1000)
        t.latch(100)
        self.assertTrue(t.is_still)
        self.assertFalse(t.update(False, 1500, can_trigger=True))
        self.assertEqual(t.progress, 1.0)
        t.update(True, 1600, can_trigger=True)
        t.update(False, 1700, can_trigger=True)
        self.assertTrue(t.update(False, 2700, can_trigger=True))

    def test_clock_starting_at_zero(self):
        t = StillnessTracker(duration_ms=1000)
        t.update(False, 0, can_trigger=True)
        self.assertTrue(t.update(False, 1001, can_trigger=True))

    def test_reset_and_snapshot(self):
        t = StillnessTracker(duration_ms=1000)
        t.update(False, 100, can_trigger=True)
        t.update(False, 600, can_trigger=True)
        snap = t.state
        t.reset()
        self.assertAlmostEqual(snap.progress, 0.5)
        self.assertEqual(t.state.progress, 0.0)
        self.assertEqual(t.state.start_ms, 0.0)

    def test_invalid_duration(self):
        with self.assertRaises(ValueError):
            StillnessTracker(duration_ms=0)


if __name__ == "__main__":
    unittest.main()
