"""Person segmentation with MediaPipe Selfie Segmentation (optional dependency)."""

import logging
import threading

import cv2
import mediapipe as mp
import numpy as np

from segment.base import pop_param, register_segmenter, reject_unknown

L = logging.getLogger("snapbooth.segment.selfie")


@register_segmenter("mediapipe")
class SelfieSegmenter:
    def __init__(self, params: dict):
        self.model_selection = pop_param(params, "model_selection", 1, int)
        reject_unknown("mediapipe", params)
        if self.model_selection not in (0, 1):
            raise ValueError("segment.params.model_selection must be 0 (general) or 1 (landscape)")
        self._lock = threading.Lock()
        self._model = mp.solutions.selfie_segmentation.SelfieSegmentation(
            model_selection=self.model_selection
        )
        L.info("MediaPipe selfie segmentation ready model_selection=%d", self.model_selection)

    def segment(self, img: np.ndarray) -> np.ndarray:
        rgb = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
        with self._lock:
            if self._model is None:
                raise RuntimeError("segmenter closed")
            results = self._model.process(rgb)
        mask = results.segmentation_mask
        if mask is None:
            # No person found this frame.
            return np.zeros(img.shape[:2], dtype=np.float32)
        return mask

    def close(self):
        with self._lock:
            model = self._model
            self._model = None
        if model is not None:
            model.close()


__all__ = ["SelfieSegmenter"]
