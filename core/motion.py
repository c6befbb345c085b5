"""Frame-to-frame motion signal used to gate stillness."""

import logging
from dataclasses import dataclass

import numpy as np

L = logging.getLogger("snapbooth.motion")

DEFAULT_PIXEL_DELTA = 30
DEFAULT_MOTION_THRESHOLD = 0.02


@dataclass(slots=True)
class MotionSample:
    motion: bool = False
    ratio: float = 0.0
    has_history: bool = False


def detect_motion(
    current: np.ndarray,
    previous: np.ndarray | None,
    *,
    pixel_delta: int = DEFAULT_PIXEL_DELTA,
    threshold: float = DEFAULT_MOTION_THRESHOLD,
) -> MotionSample:
    """
    Whole-frame motion signal from two consecutive frames.
    A pixel counts as changed when any color channel (alpha ignored) moved by more
    than `pixel_delta`; motion is reported when the changed share exceeds `threshold`.
    """
    if previous is None:
        return MotionSample(motion=False, ratio=0.0, has_history=False)
    if current.shape != previous.shape:
        # Resolution change: report motion so stillness starts over.
        return MotionSample(motion=True, ratio=1.0, has_history=True)

    cur = current if current.ndim == 3 else current[:, :, None]
    prev = previous if previous.ndim == 3 else previous[:, :, None]
    channels = min(cur.shape[2], 3)
    # int16 avoids uint8 wrap-around on subtraction.
    diff = np.abs(
        cur[:, :, :channels].astype(np.int16) - prev[:, :, :channels].astype(np.int16)
    )
    changed = (diff > pixel_delta).any(axis=2)
    total = changed.size
    ratio = float(np.count_nonzero(changed)) / total if total else 0.0
    return MotionSample(motion=ratio > threshold, ratio=ratio, has_history=True)


class MotionDetector:
    def __init__(
        self,
        pixel_delta: int = DEFAULT_PIXEL_DELTA,
        threshold: float = DEFAULT_MOTION_THRESHOLD,
    ):
        self.pixel_delta = int(pixel_delta)
        self.threshold = float(threshold)
        self._validate()

    def compare(self, current: np.ndarray, previous: np.ndarray | None) -> MotionSample:
        sample = detect_motion(
            current,
            previous,
            pixel_delta=self.pixel_delta,
            threshold=self.threshold,
        )
        if sample.motion:
            L.debug("motion ratio=%.4f thr=%.4f", sample.ratio, self.threshold)
        return sample

    def _validate(self):
        if not (0 <= self.pixel_delta <= 255):
            raise ValueError("motion pixel_delta must be 0..255")
        if not (0 < self.threshold <= 1.0):
            raise ValueError("motion threshold must be in (0, 1]")


__all__ = ["MotionDetector", "MotionSample", "detect_motion"]
