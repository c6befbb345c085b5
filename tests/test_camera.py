import os
import tempfile
import unittest

import cv2
import numpy as np

from camera import CameraConfig, create_camera
from camera.mock import MockCamera, list_replay_images


class TestMockCamera(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.dir = tmp.name
        # name -> gray level, so each frame is identifiable after resizing.
        self.levels = {"10.png": 100, "2.png": 20, "a.png": 200, "b.png": 250}
        for name, level in self.levels.items():
            cv2.imwrite(os.path.join(self.dir, name), np.full((30, 40, 3), level, np.uint8))
        with open(os.path.join(self.dir, "notes.txt"), "w", encoding="utf-8") as f:
            f.write("ignored")

    def _camera(self, **kwargs):
        params = dict(image_dir=self.dir, fps=0, width=64, height=48)
        params.update(kwargs)
        return create_camera("mock", CameraConfig(**params))

    def _levels(self, cam, n):
        out = []
        for i in range(n):
            res = cam.capture_once(i + 1)
            out.append(int(res.image[0, 0, 0]) if res.success else None)
        return out

    def test_listing_orders(self):
        natural = [os.path.basename(p) for p in list_replay_images(self.dir, "name_natural")]
        self.assertEqual(natural, ["2.png", "10.png", "a.png", "b.png"])
        plain = [os.path.basename(p) for p in list_replay_images(self.dir, "name_asc")]
        self.assertEqual(plain, ["10.png", "2.png", "a.png", "b.png"])
        self.assertEqual(len(list_replay_images(self.dir, "random")), 4)

    def test_loop_replays_and_resizes(self):
        cam = self._camera(order="name_natural")
        self.assertIsInstance(cam, MockCamera)
        with cam.session():
            first = cam.capture_once(1)
            self.assertTrue(first.success)
            self.assertEqual(first.image.shape, (48, 64, 3))
            self.assertEqual(first.device_id, "mock")
            self.assertEqual(self._levels(cam, 4), [100, 200, 250, 20])

    def test_stop_and_hold(self):
        cam = self._camera(order="name_natural", end_mode="stop")
        with cam.session():
            self._levels(cam, 4)
            res = cam.capture_once(5)
            self.assertFalse(res.success)
            self.assertEqual(res.error, "replay_finished")
        cam = self._camera(order="name_natural", end_mode="hold")
        with cam.session():
            self.assertEqual(self._levels(cam, 6)[-3:], [250, 250, 250])

    def test_mirror_flips_horizontally(self):
        img = np.zeros((30, 40, 3), np.uint8)
        img[:, :20] = 255
        cv2.imwrite(os.path.join(self.dir, "a.png"), img)
        cam = self._camera(order="name_desc", mirror=True, width=0, height=0, end_mode="stop")
        with cam.session():
            cam.capture_once(1)  # b.png
            res = cam.capture_once(2)
        self.assertEqual(int(res.image[0, 0, 0]), 0)
        self.assertEqual(int(res.image[0, 39, 0]), 255)

    def test_bad_settings(self):
        with self.assertRaises(ValueError):
            self._camera(order="shuffle")
        with self.assertRaises(ValueError):
            self._camera(end_mode="bounce")
        cam = self._camera(image_dir=os.path.join(self.dir, "missing"))
        with self.assertRaises(RuntimeError):
            with cam.session():
                pass


if __name__ == "__main__":
    unittest.main()
