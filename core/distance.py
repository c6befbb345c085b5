"""Subject distance heuristic derived from segmentation mask coverage.

The estimate is a coarse lookup on the fraction of high-confidence foreground
pixels: a subject filling more of the frame is assumed to stand closer. It is not
a calibrated depth measurement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

L = logging.getLogger("snapbooth.distance")

# (foreground ratio lower bound, distance in meters), checked in order.
DISTANCE_TABLE: Tuple[Tuple[float, float], ...] = (
    (0.25, 0.5),
    (0.15, 0.8),
    (0.08, 1.2),
    (0.04, 1.8),
    (0.01, 2.2),
)
# Reported below the last bucket and when no foreground pixel is found at all.
FAR_DISTANCE_M = 2.5
DEFAULT_MASK_THRESHOLD = 200
FAILED_DISTANCE_M = 0.0


class MaskReadError(Exception):
    pass


@dataclass(slots=True)
class DistanceEstimate:
    raw: float = FAILED_DISTANCE_M
    smoothed: float = 0.0
    in_range: bool = False
    ok: bool = False
    foreground_ratio: float = 0.0


def to_mask_u8(mask) -> np.ndarray:
    """Normalize a confidence mask to a 2-D uint8 array on the 0..255 scale.

    Float masks are treated as probabilities in [0, 1]; integer masks are taken as
    already being on the 0..255 scale. A trailing singleton or alpha channel is
    accepted (the last channel carries the confidence).
    """
    if mask is None:
        raise MaskReadError("mask is missing")
    try:
        arr = np.asarray(mask)
    except Exception as e:
        raise MaskReadError(f"mask unreadable: {e}") from e
    if arr.ndim == 3:
        arr = arr[:, :, -1]
    if arr.ndim != 2 or arr.size == 0:
        raise MaskReadError(f"mask must be a non-empty 2-D raster, got shape {arr.shape}")
    if arr.dtype == np.uint8:
        return arr
    if np.issubdtype(arr.dtype, np.floating):
        if not np.isfinite(arr).all():
            raise MaskReadError("mask contains non-finite values")
        return np.clip(arr * 255.0 + 0.5, 0, 255).astype(np.uint8)
    if arr.dtype == np.bool_:
        return arr.astype(np.uint8) * 255
    if np.issubdtype(arr.dtype, np.integer):
        return np.clip(arr, 0, 255).astype(np.uint8)
    raise MaskReadError(f"unsupported mask dtype {arr.dtype}")


def foreground_ratio(mask, threshold: int = DEFAULT_MASK_THRESHOLD) -> tuple[int, float]:
    """Return (foreground pixel count, foreground ratio) for confidence > threshold."""
    mask_u8 = to_mask_u8(mask)
    count = int(np.count_nonzero(mask_u8 > threshold))
    return count, count / float(mask_u8.size)


def distance_for_ratio(
    ratio: float,
    table: Sequence[Tuple[float, float]] = DISTANCE_TABLE,
    fallback: float = FAR_DISTANCE_M,
) -> float:
    for ratio_threshold, distance_m in table:
        if ratio > ratio_threshold:
            return float(distance_m)
    return float(fallback)


def estimate_distance(
    mask,
    *,
    threshold: int = DEFAULT_MASK_THRESHOLD,
    table: Sequence[Tuple[float, float]] = DISTANCE_TABLE,
    no_subject_distance: float = FAR_DISTANCE_M,
) -> float:
    """Raw distance estimate in meters. Raises MaskReadError on unreadable masks."""
    count, ratio = foreground_ratio(mask, threshold)
    if count == 0:
        return float(no_subject_distance)
    return distance_for_ratio(ratio, table, no_subject_distance)


class DistanceSmoother:
    """Exponential moving average over raw estimates plus the in-range decision."""

    def __init__(
        self,
        alpha: float = 0.3,
        min_distance: float = 1.5,
        max_distance: float = 2.0,
    ):
        self.alpha = float(alpha)
        self.min_distance = float(min_distance)
        self.max_distance = float(max_distance)
        self.smoothed = 0.0

    def update(self, raw: float) -> float:
        if self.smoothed == 0:
            self.smoothed = float(raw)
        else:
            self.smoothed = self.smoothed * (1.0 - self.alpha) + float(raw) * self.alpha
        return self.smoothed

    def in_range(self, value: float | None = None) -> bool:
        v = self.smoothed if value is None else value
        return self.min_distance <= v <= self.max_distance

    def reset(self):
        self.smoothed = 0.0


class MaskAnalyzer:
    def __init__(
        self,
        smoother: DistanceSmoother,
        *,
        threshold: int = DEFAULT_MASK_THRESHOLD,
        table: Sequence[Tuple[float, float]] = DISTANCE_TABLE,
        no_subject_distance: float = FAR_DISTANCE_M,
    ):
        self.smoother = smoother
        self.threshold = int(threshold)
        self.table = tuple((float(r), float(d)) for r, d in table)
        self.no_subject_distance = float(no_subject_distance)
        self._validate()

    def analyze(self, mask) -> DistanceEstimate:
        try:
            count, ratio = foreground_ratio(mask, self.threshold)
        except MaskReadError as e:
            # A failed read must never look like an in-range subject.
            L.warning("Mask read failed; treating subject as out of range: %s", e)
            self.smoother.reset()
            return DistanceEstimate(raw=FAILED_DISTANCE_M, smoothed=0.0, ok=False)
        raw = (
            self.no_subject_distance
            if count == 0
            else distance_for_ratio(ratio, self.table, self.no_subject_distance)
        )
        smoothed = self.smoother.update(raw)
        return DistanceEstimate(
            raw=raw,
            smoothed=smoothed,
            in_range=self.smoother.in_range(smoothed),
            ok=True,
            foreground_ratio=ratio,
        )

    def reset(self):
        self.smoother.reset()

    def _validate(self):
        if not (0 <= self.threshold <= 255):
            raise ValueError("mask threshold must be 0..255")
        last = None
        for ratio_threshold, distance_m in self.table:
            if last is not None and ratio_threshold >= last:
                raise ValueError("distance table ratios must be strictly decreasing")
            if distance_m <= 0:
                raise ValueError("distance table distances must be > 0")
            last = ratio_threshold
        if self.no_subject_distance <= 0:
            raise ValueError("no_subject_distance must be > 0")


__all__ = [
    "DISTANCE_TABLE",
    "DistanceEstimate",
    "DistanceSmoother",
    "MaskAnalyzer",
    "MaskReadError",
    "distance_for_ratio",
    "estimate_distance",
    "foreground_ratio",
    "to_mask_u8",
]
