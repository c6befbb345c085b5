"""Moving-foreground masks from OpenCV's MOG2 background subtractor.

Needs no model download, but it only separates what changes from a learned
background; a subject standing still long enough fades into it. Use
`learning_rate` close to 0 after warm-up to slow that down.
"""

import logging

import cv2
import numpy as np

from segment.base import pop_param, register_segmenter, reject_unknown

L = logging.getLogger("snapbooth.segment.mog2")


@register_segmenter("mog2")
class Mog2Segmenter:
    def __init__(self, params: dict):
        self.history = pop_param(params, "history", 500, int)
        self.var_threshold = pop_param(params, "var_threshold", 16.0, float)
        self.learning_rate = pop_param(params, "learning_rate", -1.0, float)
        self.warmup_frames = pop_param(params, "warmup_frames", 30, int)
        self.frozen_learning_rate = pop_param(params, "frozen_learning_rate", 0.0005, float)
        self.blur_ksize = pop_param(params, "blur_ksize", 5, int)
        reject_unknown("mog2", params)
        if self.history < 1:
            raise ValueError("segment.params.history must be > 0")
        if self.blur_ksize < 0 or (self.blur_ksize and self.blur_ksize % 2 == 0):
            raise ValueError("segment.params.blur_ksize must be 0 or an odd number")
        self._subtractor = cv2.createBackgroundSubtractorMOG2(
            history=self.history, varThreshold=self.var_threshold, detectShadows=False
        )
        self._frames = 0

    def segment(self, img: np.ndarray) -> np.ndarray:
        self._frames += 1
        rate = (
            self.learning_rate
            if self._frames <= self.warmup_frames
            else self.frozen_learning_rate
        )
        fg = self._subtractor.apply(img, learningRate=rate)
        if self.blur_ksize:
            fg = cv2.medianBlur(fg, self.blur_ksize)
        return fg

    def close(self):
        self._subtractor = None


__all__ = ["Mog2Segmenter"]
