# -- coding: utf-8 --
"""Replay camera: serves a folder of still images as a paced live feed.

Useful for tuning the distance table and viewport without a booth camera:
drop a recorded session into a folder and point ``camera.mock.image_dir`` at it.
"""

import logging
import os
import random
import re
import time
from contextlib import contextmanager
from datetime import datetime, timezone

import cv2
import numpy as np

from camera.base import (
    BaseCamera,
    CameraConfig,
    CaptureResult,
    register_camera,
    warn_if_below_minimum,
)
from utils.image import imread_any

L = logging.getLogger("snapbooth.camera.mock")

_SUPPORTED_EXTS = {".jpg", ".jpeg", ".png", ".bmp"}
_END_CHOICES = {"loop", "stop", "hold"}


def _natural_key(path: str):
    name = os.path.basename(path)
    return [int(p) if p.isdigit() else p.lower() for p in re.split(r"(\d+)", name)]


# order -> (sort key, reverse); "random" is shuffled instead of sorted.
_ORDERINGS = {
    "name_asc": (lambda p: os.path.basename(p).lower(), False),
    "name_desc": (lambda p: os.path.basename(p).lower(), True),
    "name_natural": (_natural_key, False),
    "mtime_asc": (os.path.getmtime, False),
    "mtime_desc": (os.path.getmtime, True),
}
_ORDER_CHOICES = set(_ORDERINGS) | {"random"}


def list_replay_images(root_dir: str, order: str = "name_asc") -> list[str]:
    paths = [
        os.path.join(root_dir, name)
        for name in os.listdir(root_dir)
        if os.path.splitext(name)[1].lower() in _SUPPORTED_EXTS
        and os.path.isfile(os.path.join(root_dir, name))
    ]
    if order == "random":
        random.shuffle(paths)
        return paths
    key, reverse = _ORDERINGS[order]
    return sorted(paths, key=key, reverse=reverse)


@register_camera("mock")
class MockCamera(BaseCamera):
    def __init__(self, cfg: CameraConfig):
        super().__init__(cfg)
        self.order = str(cfg.order or "name_asc").strip().lower()
        self.end_mode = str(cfg.end_mode or "loop").strip().lower()
        if self.order not in _ORDER_CHOICES:
            raise ValueError(
                f"mock order must be one of {sorted(_ORDER_CHOICES)}, got {self.order!r}"
            )
        if self.end_mode not in _END_CHOICES:
            raise ValueError(
                f"mock end_mode must be one of {sorted(_END_CHOICES)}, got {self.end_mode!r}"
            )
        self._paths: list[str] = []
        self._pos = 0
        self._next_due = 0.0
        self._frames: dict[str, np.ndarray] = {}

    def _advance(self) -> str | None:
        if self._pos >= len(self._paths):
            if self.end_mode == "stop" or not self._paths:
                return None
            if self.end_mode == "hold":
                return self._paths[-1]
            if self.order == "random":
                random.shuffle(self._paths)
            self._pos = 0
        path = self._paths[self._pos]
        self._pos += 1
        return path

    def _frame(self, path: str) -> np.ndarray:
        """Decoded and resized once per file; replay loops reuse the array."""
        frame = self._frames.get(path)
        if frame is not None:
            return frame
        img = imread_any(path, cv2.IMREAD_COLOR)
        if img is None:
            raise RuntimeError(f"opencv_imread_failed {os.path.basename(path)}")
        w, h = int(self.cfg.width), int(self.cfg.height)
        if w > 0 and h > 0 and (img.shape[1], img.shape[0]) != (w, h):
            img = cv2.resize(img, (w, h), interpolation=cv2.INTER_AREA)
        if not self._frames:
            warn_if_below_minimum(img.shape[1], img.shape[0], device="mock")
        self._frames[path] = img
        return img

    def _wait_for_slot(self):
        if self.cfg.fps <= 0:
            return
        now = time.perf_counter()
        if self._next_due > now:
            time.sleep(self._next_due - now)
            now = self._next_due
        self._next_due = now + 1.0 / float(self.cfg.fps)

    def capture_once(self, idx, triggered_at=None):
        with self.lock:
            path = self._advance()
            if path is None:
                return CaptureResult(
                    trigger_seq=idx, device_id="mock", error="replay_finished"
                )
            self._wait_for_slot()
            t0 = time.perf_counter()
            try:
                frame = self._frame(path)
            except RuntimeError as e:
                return CaptureResult(trigger_seq=idx, device_id="mock", error=str(e))
        if self.cfg.mirror:
            frame = cv2.flip(frame, 1)
        return CaptureResult(
            trigger_seq=idx,
            device_id="mock",
            success=True,
            image=frame,
            triggered_at=triggered_at,
            captured_at=datetime.now(timezone.utc),
            timings={"grab_ms": (time.perf_counter() - t0) * 1000},
        )

    @contextmanager
    def session(self):
        root = os.path.abspath(str(self.cfg.image_dir or "").strip() or ".")
        if not self.cfg.image_dir or not os.path.isdir(root):
            raise RuntimeError(f"mock image_dir not found: {self.cfg.image_dir!r}")
        self._paths = list_replay_images(root, self.order)
        if not self._paths:
            raise RuntimeError(f"no images found in {root}")
        self._pos = 0
        L.info("Replaying %d image(s) from %s (order=%s end=%s)", len(self._paths), root, self.order, self.end_mode)
        try:
            yield self
        finally:
            self._frames.clear()


__all__ = ["MockCamera", "list_replay_images"]
