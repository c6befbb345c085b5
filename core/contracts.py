"""Data contracts for camera, segmentation, trigger, and capture output channels."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class TriggerEvent:
    trigger_seq: int = 0
    source: str = ""
    command: str = ""
    triggered_at: datetime | None = None
    monotonic_ms: int = 0
    payload: Any | None = None


@dataclass(slots=True)
class CaptureResult:
    """One frame grabbed from a capture source."""

    trigger_seq: int = 0
    source: str = ""
    device_id: str = ""
    success: bool = False
    error: str | None = None
    image: Any | None = None  # runtime np.ndarray (BGR)
    triggered_at: datetime | None = None
    captured_at: datetime | None = None
    timings: dict[str, float] | None = None


@dataclass(slots=True)
class SegmentedFrame:
    """A frame paired with the mask produced for that exact frame."""

    frame_seq: int = 0
    image: Any | None = None  # np.ndarray (H, W, 3)
    mask: Any | None = None  # np.ndarray (H, W)
    captured_at: datetime | None = None
    timings: dict[str, float] | None = None


@dataclass(slots=True)
class CaptureRecord:
    capture_seq: int = 0
    source: str = ""
    mode: str = ""  # "auto"/"manual"
    result: str = "ERROR"  # "OK"/"ERROR"
    path: str | None = None
    triggered_at: datetime | None = None
    exported_at: datetime | None = None
    message: str = ""
    duration_ms: float | None = None
    remark: str = ""


__all__ = [
    "TriggerEvent",
    "CaptureResult",
    "SegmentedFrame",
    "CaptureRecord",
]
