"""Stillness progress over consecutive motion samples."""

import logging
from dataclasses import dataclass

L = logging.getLogger("snapbooth.stillness")


@dataclass(slots=True)
class StillnessState:
    start_ms: float = 0.0  # 0 = not accumulating
    progress: float = 0.0
    is_still: bool = False


class StillnessTracker:
    """Turns per-frame motion samples into a stillness progress ratio.

    `update()` returns True exactly once per accumulation episode: the first frame
    on which progress has reached 1 while the caller reports that a countdown may
    start. Motion or `reset()` ends the episode.
    """

    def __init__(self, duration_ms: float = 2000.0):
        if float(duration_ms) <= 0:
            raise ValueError("stillness duration_ms must be > 0")
        self.duration_ms = float(duration_ms)
        self._state = StillnessState()

    @property
    def state(self) -> StillnessState:
        s = self._state
        return StillnessState(start_ms=s.start_ms, progress=s.progress, is_still=s.is_still)

    @property
    def progress(self) -> float:
        return self._state.progress

    @property
    def is_still(self) -> bool:
        return self._state.is_still

    def update(self, motion: bool, now_ms: float, *, can_trigger: bool) -> bool:
        s = self._state
        if motion:
            s.start_ms = 0.0
            s.progress = 0.0
            s.is_still = False
            return False
        if s.start_ms == 0:
            # Guard against a clock that starts at 0.
            s.start_ms = float(now_ms) or 1e-9
            s.progress = 0.0
        else:
            elapsed = max(0.0, float(now_ms) - s.start_ms)
            s.progress = min(1.0, elapsed / self.duration_ms)
        if s.progress >= 1.0 and not s.is_still and can_trigger:
            s.is_still = True
            L.info("Stillness reached after %.0fms", self.duration_ms)
            return True
        return False

    def latch(self, now_ms: float):
        """Mark the current still period as used by a countdown started elsewhere."""
        s = self._state
        if s.start_ms == 0:
            s.start_ms = float(now_ms) or 1e-9
        s.is_still = True

    def reset(self):
        s = self._state
        s.start_ms = 0.0
        s.progress = 0.0
        s.is_still = False


__all__ = ["StillnessState", "StillnessTracker"]
