"""BoothPipeline: per-frame coordination of distance, stillness, capture, and compositing.

The pipeline is the single owner of the rolling per-frame state (previous frame,
smoothed distance, stillness accumulation, background selection). `process_frame`
must be called from one thread at a time; trigger entry points may be called from
any thread and only touch state guarded by `_lock` or the capture machine.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import numpy as np

from core.capture import (
    CaptureMachine,
    CaptureOutcome,
    CaptureState,
    describe_state,
)
from core.compositor import (
    BACKGROUND_BLUR,
    BACKGROUND_NONE,
    CompositeFrame,
    FrameCompositor,
    ResolvedBackground,
    Viewport,
)
from core.contracts import CaptureRecord
from core.distance import DistanceEstimate, DistanceSmoother, MaskAnalyzer
from core.motion import MotionDetector, MotionSample
from core.stillness import StillnessState, StillnessTracker
from core.timers import ThreadingScheduler, TimerScheduler

L = logging.getLogger("snapbooth.pipeline")

STILLNESS_SOURCE = "STILLNESS"


class BackgroundSource(Protocol):
    def resolve(self, background_id: str) -> ResolvedBackground: ...

    def next_id(self, current_id: str) -> str: ...


class ExportSink(Protocol):
    def export(
        self,
        image: np.ndarray,
        seq: int,
        *,
        source: str = "",
        ts: datetime | None = None,
    ) -> str: ...


class _BuiltinBackgrounds:
    """Fallback when no catalogue is configured: only `none` and `blur`."""

    _IDS = (BACKGROUND_NONE, BACKGROUND_BLUR)

    @property
    def ids(self) -> list[str]:
        return list(self._IDS)

    def describe(self) -> list[dict[str, Any]]:
        return [{"id": bg_id, "name": bg_id.title()} for bg_id in self._IDS]

    def resolve(self, background_id: str) -> ResolvedBackground:
        if background_id == BACKGROUND_BLUR:
            return ResolvedBackground(kind=BACKGROUND_BLUR, background_id=BACKGROUND_BLUR)
        if background_id != BACKGROUND_NONE:
            L.warning("Unknown background '%s'; using none", background_id)
        return ResolvedBackground()

    def next_id(self, current_id: str) -> str:
        try:
            idx = self._IDS.index(current_id)
        except ValueError:
            return self._IDS[0]
        return self._IDS[(idx + 1) % len(self._IDS)]


@dataclass(slots=True)
class FrameResult:
    frame_seq: int
    composite: CompositeFrame
    distance: DistanceEstimate
    motion: MotionSample
    stillness: StillnessState
    state: CaptureState
    background_id: str = BACKGROUND_NONE
    countdown_started: bool = False
    process_ms: float = 0.0


@dataclass(slots=True)
class BoothStatus:
    frame_seq: int = 0
    distance_m: float = 0.0
    raw_distance_m: float = 0.0
    in_range: bool = False
    stillness_progress: float = 0.0
    is_still: bool = False
    state: str = "idle"
    countdown: int | None = None
    background_id: str = BACKGROUND_NONE
    background_kind: str = BACKGROUND_NONE
    capture_count: int = 0
    last_capture: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "frame_seq": self.frame_seq,
            "distance_m": round(self.distance_m, 3),
            "raw_distance_m": round(self.raw_distance_m, 3),
            "in_range": self.in_range,
            "stillness_pct": int(round(self.stillness_progress * 100)),
            "is_still": self.is_still,
            "state": self.state,
            "countdown": self.countdown,
            "background": self.background_id,
            "background_kind": self.background_kind,
            "capture_count": self.capture_count,
            "last_capture": dict(self.last_capture),
        }


class BoothPipeline:
    def __init__(
        self,
        compositor: FrameCompositor,
        *,
        analyzer: MaskAnalyzer | None = None,
        motion: MotionDetector | None = None,
        stillness: StillnessTracker | None = None,
        backgrounds: BackgroundSource | None = None,
        export_sink: ExportSink | None = None,
        record_sink: Callable[[CaptureRecord], None] | None = None,
        scheduler: TimerScheduler | None = None,
        countdown_length: int = 3,
        countdown_interval_ms: float = 1000.0,
        cooldown_ms: float = 3000.0,
        manual_capture_mode: str = "direct",
        initial_background: str = BACKGROUND_NONE,
    ):
        self.compositor = compositor
        self.analyzer = analyzer or MaskAnalyzer(
            DistanceSmoother(), threshold=compositor.mask_threshold
        )
        self.motion = motion or MotionDetector()
        self.stillness = stillness or StillnessTracker()
        self.backgrounds: BackgroundSource = backgrounds or _BuiltinBackgrounds()
        self.export_sink = export_sink
        self.record_sink = record_sink
        self.scheduler: TimerScheduler = scheduler or ThreadingScheduler()
        self.machine = CaptureMachine(
            self.scheduler,
            self._capture_action,
            countdown_length=countdown_length,
            countdown_interval_ms=countdown_interval_ms,
            cooldown_ms=cooldown_ms,
            manual_capture_mode=manual_capture_mode,
        )

        # Guards selection, latest original and status fields shared with trigger threads.
        self._lock = threading.Lock()
        self._frame_seq = 0
        self._previous: np.ndarray | None = None
        self._latest_original: np.ndarray | None = None
        self._in_range = False
        self._last_result: FrameResult | None = None
        self._last_record: CaptureRecord | None = None
        self._capture_seq = 0
        # Set by trigger threads, consumed on the frame thread.
        self._latch_stillness = False

        self._background_id = str(initial_background or BACKGROUND_NONE)
        self._background = self.backgrounds.resolve(self._background_id)
        self._pending_background: str | None = None
        self._history: list[str] = []

    # ---- per-frame ----

    def process_frame(self, frame: np.ndarray, mask, *, now_ms: float | None = None) -> FrameResult:
        t0 = time.perf_counter()
        now = self.scheduler.now_ms() if now_ms is None else float(now_ms)
        self._apply_pending_background()
        with self._lock:
            latch, self._latch_stillness = self._latch_stillness, False
        if latch:
            self.stillness.latch(now)

        self._frame_seq += 1
        seq = self._frame_seq
        distance = self.analyzer.analyze(mask)
        base = self.compositor.prepare_frame(frame)

        countdown_started = False
        motion = MotionSample()
        if distance.in_range:
            motion = self.motion.compare(base, self._previous)
            self._previous = base
            reached = self.stillness.update(
                motion.motion, now, can_trigger=self.machine.is_idle
            )
            if reached:
                countdown_started = self.machine.request_countdown(
                    auto=True, source=STILLNESS_SOURCE
                )
        else:
            self.stillness.reset()
            self._previous = None

        state = self.machine.state
        composite = self.compositor.compose(
            base,
            mask,
            self._background,
            in_range=distance.in_range,
            state=state,
        )
        result = FrameResult(
            frame_seq=seq,
            composite=composite,
            distance=distance,
            motion=motion,
            stillness=self.stillness.state,
            state=state,
            background_id=self._background_id,
            countdown_started=countdown_started,
            process_ms=(time.perf_counter() - t0) * 1000,
        )
        with self._lock:
            self._latest_original = composite.original
            self._in_range = distance.in_range
            self._last_result = result
        return result

    # ---- triggers ----

    def trigger_auto(self, source: str = "HOTKEY") -> bool:
        """Start an auto countdown on request; refused while the subject is out of range."""
        with self._lock:
            in_range = self._in_range
        if not in_range:
            L.debug("Auto trigger from %s ignored: subject out of range", source)
            return False
        if not self.machine.request_countdown(auto=True, source=source):
            return False
        # Counts as this still period's countdown, like reaching stillness.
        with self._lock:
            self._latch_stillness = True
        return True

    def trigger_manual(self, source: str = "MANUAL") -> bool:
        return self.machine.request_countdown(auto=False, source=source)

    def capture(self, source: str = "MANUAL") -> bool:
        return self.machine.capture(source)

    def set_background(self, background_id: str) -> str:
        bg_id = str(background_id or BACKGROUND_NONE).strip() or BACKGROUND_NONE
        with self._lock:
            current = self._pending_background or self._background_id
            if bg_id != current:
                self._history.append(current)
            self._pending_background = bg_id
            self._latch_stillness = False
        self.machine.cancel("background_change")
        L.info("Background selected: %s", bg_id)
        return bg_id

    def next_background(self) -> str:
        with self._lock:
            current = self._pending_background or self._background_id
        return self.set_background(self.backgrounds.next_id(current))

    def previous_background(self) -> str | None:
        with self._lock:
            if not self._history:
                L.debug("Background history empty")
                return None
            bg_id = self._history.pop()
            self._pending_background = bg_id
            self._latch_stillness = False
        self.machine.cancel("background_change")
        L.info("Background restored: %s", bg_id)
        return bg_id

    def shutdown(self):
        self.machine.shutdown()

    # ---- read API ----

    @property
    def background_id(self) -> str:
        with self._lock:
            return self._pending_background or self._background_id

    @property
    def background_history(self) -> list[str]:
        with self._lock:
            return list(self._history)

    @property
    def last_result(self) -> FrameResult | None:
        with self._lock:
            return self._last_result

    def status(self) -> BoothStatus:
        with self._lock:
            res = self._last_result
            rec = self._last_record
            bg_id = self._pending_background or self._background_id
        state = self.machine.state
        st = BoothStatus(
            state=describe_state(state),
            countdown=self.machine.countdown_value,
            background_id=bg_id,
            capture_count=self.machine.capture_count,
        )
        if res is not None:
            st.frame_seq = res.frame_seq
            st.distance_m = res.distance.smoothed
            st.raw_distance_m = res.distance.raw
            st.in_range = res.distance.in_range
            st.stillness_progress = res.stillness.progress
            st.is_still = res.stillness.is_still
            st.background_kind = res.composite.background_kind
        if rec is not None:
            st.last_capture = {
                "seq": rec.capture_seq,
                "result": rec.result,
                "path": rec.path,
                "mode": rec.mode,
                "message": rec.message,
            }
        return st

    # ---- internals ----

    def _apply_pending_background(self):
        with self._lock:
            bg_id = self._pending_background
            self._pending_background = None
        if bg_id is None:
            return
        self._background = self.backgrounds.resolve(bg_id)
        with self._lock:
            self._background_id = bg_id
        # Fresh start for the new look; the next still period re-arms the countdown.
        self.stillness.reset()
        self._previous = None

    def _capture_action(self, source: str, mode: str) -> CaptureOutcome:
        t0 = time.perf_counter()
        triggered_at = datetime.now(timezone.utc)
        with self._lock:
            self._capture_seq += 1
            seq = self._capture_seq
            image = self._latest_original
        rec = CaptureRecord(
            capture_seq=seq,
            source=source,
            mode=mode,
            triggered_at=triggered_at,
        )
        if image is None:
            outcome = CaptureOutcome(ok=False, message="no frame available")
        elif self.export_sink is None:
            outcome = CaptureOutcome(ok=False, message="export disabled")
        else:
            try:
                path = self.export_sink.export(image, seq, source=source, ts=triggered_at)
                outcome = CaptureOutcome(ok=True, path=path, message="saved")
            except Exception as e:
                L.warning("Export failed seq=%s src=%s: %s", seq, source, e)
                outcome = CaptureOutcome(ok=False, message=f"export_failed: {e}")
        rec.result = "OK" if outcome.ok else "ERROR"
        rec.path = outcome.path
        rec.message = outcome.message
        rec.remark = "" if outcome.ok else outcome.message
        rec.exported_at = datetime.now(timezone.utc)
        rec.duration_ms = (time.perf_counter() - t0) * 1000
        with self._lock:
            self._last_record = rec
        if self.record_sink is not None:
            try:
                self.record_sink(rec)
            except Exception:
                L.exception("Capture record sink failed seq=%s", seq)
        return outcome


def build_pipeline_from_loaded_config(
    cfg,
    *,
    backgrounds: BackgroundSource | None = None,
    export_sink: ExportSink | None = None,
    record_sink: Callable[[CaptureRecord], None] | None = None,
    scheduler: TimerScheduler | None = None,
) -> BoothPipeline:
    booth = cfg.booth
    canvas = cfg.canvas
    vp = cfg.viewport
    compositor = FrameCompositor(
        (canvas.width, canvas.height),
        Viewport(vp.x, vp.y, vp.width, vp.height),
        mask_threshold=booth.mask_threshold,
        background_scale=canvas.background_scale,
        letterbox_color=tuple(canvas.letterbox_color),
        blur_sigma=canvas.blur_sigma,
        dim_alpha=canvas.dim_alpha,
        backdrop_alpha=canvas.backdrop_alpha,
    )
    analyzer = MaskAnalyzer(
        DistanceSmoother(
            alpha=booth.smoothing_alpha,
            min_distance=booth.min_distance_m,
            max_distance=booth.max_distance_m,
        ),
        threshold=booth.mask_threshold,
        table=[tuple(row) for row in booth.distance_table],
        no_subject_distance=booth.no_subject_distance_m,
    )
    return BoothPipeline(
        compositor,
        analyzer=analyzer,
        motion=MotionDetector(
            pixel_delta=booth.motion_pixel_delta, threshold=booth.motion_threshold
        ),
        stillness=StillnessTracker(duration_ms=booth.stillness_ms),
        backgrounds=backgrounds,
        export_sink=export_sink,
        record_sink=record_sink,
        scheduler=scheduler,
        countdown_length=booth.countdown_length,
        countdown_interval_ms=booth.countdown_interval_ms,
        cooldown_ms=booth.cooldown_ms,
        manual_capture_mode=booth.manual_capture_mode,
        initial_background=cfg.backgrounds.initial,
    )


__all__ = [
    "BackgroundSource",
    "BoothPipeline",
    "BoothStatus",
    "ExportSink",
    "FrameResult",
    "STILLNESS_SOURCE",
    "build_pipeline_from_loaded_config",
]
