# -- coding: utf-8 --

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone

import cv2

from camera.base import (
    BaseCamera,
    CameraConfig,
    CaptureResult,
    register_camera,
    warn_if_below_minimum,
)

L = logging.getLogger("snapbooth.camera.usb")

_BACKENDS = {
    "any": cv2.CAP_ANY,
    "dshow": cv2.CAP_DSHOW,
    "msmf": cv2.CAP_MSMF,
    "v4l2": cv2.CAP_V4L2,
    "avfoundation": cv2.CAP_AVFOUNDATION,
    "gstreamer": cv2.CAP_GSTREAMER,
}


@register_camera("usb")
class UsbCamera(BaseCamera):
    """Webcam via cv2.VideoCapture; resolution and fps are requests, not guarantees."""

    def __init__(self, cfg: CameraConfig):
        super().__init__(cfg)
        self._cap: cv2.VideoCapture | None = None
        self._actual_size = (0, 0)

    @property
    def actual_size(self) -> tuple[int, int]:
        return self._actual_size

    def _open(self) -> cv2.VideoCapture:
        backend = _BACKENDS.get(self.cfg.backend, cv2.CAP_ANY)
        cap = cv2.VideoCapture(int(self.cfg.device_index), backend)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(
                f"Cannot open camera index={self.cfg.device_index} backend={self.cfg.backend}"
            )
        if self.cfg.width > 0 and self.cfg.height > 0:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height)
        if self.cfg.fps > 0:
            cap.set(cv2.CAP_PROP_FPS, self.cfg.fps)
        # Keep latency low: we always want the newest frame.
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        self._actual_size = (width, height)
        L.info(
            "Camera opened index=%s requested=%dx%d@%.0f actual=%dx%d@%.1f",
            self.cfg.device_index,
            self.cfg.width,
            self.cfg.height,
            self.cfg.fps,
            width,
            height,
            float(cap.get(cv2.CAP_PROP_FPS) or 0.0),
        )
        warn_if_below_minimum(width, height, device=f"usb:{self.cfg.device_index}")
        return cap

    def capture_once(self, idx, triggered_at=None):
        cap = self._cap
        if cap is None:
            return CaptureResult(
                success=False,
                trigger_seq=idx,
                device_id=str(self.cfg.device_index),
                error="camera_not_open",
            )
        start = time.perf_counter()
        frame = None
        attempts = max(1, int(self.cfg.max_retry_per_frame))
        with self.lock:
            for attempt in range(attempts):
                ok, frame = cap.read()
                if ok and frame is not None:
                    break
                frame = None
                L.debug("[%5s] grab failed attempt=%d/%d", idx, attempt + 1, attempts)
        grab_ms = (time.perf_counter() - start) * 1000
        if frame is None:
            return CaptureResult(
                success=False,
                trigger_seq=idx,
                device_id=str(self.cfg.device_index),
                error="grab_failed",
                timings={"grab_ms": grab_ms},
            )
        if self.cfg.mirror:
            frame = cv2.flip(frame, 1)
        return CaptureResult(
            success=True,
            trigger_seq=idx,
            device_id=str(self.cfg.device_index),
            image=frame,
            triggered_at=triggered_at,
            captured_at=datetime.now(timezone.utc),
            timings={"grab_ms": grab_ms},
        )

    @contextmanager
    def session(self):
        self._cap = self._open()
        try:
            yield self
        finally:
            cap = self._cap
            self._cap = None
            if cap is not None:
                cap.release()
                L.info("Camera released index=%s", self.cfg.device_index)


__all__ = ["UsbCamera"]
