import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np

from core.contracts import CaptureResult, SegmentedFrame, TriggerEvent
from trigger.gateway import (
    CMD_AUTO,
    CMD_CAPTURE,
    CMD_MANUAL,
    CMD_NEXT_BG,
    CMD_PREV_BG,
    CMD_SET_BG,
)
from utils.lifecycle import drain_queue_nowait

L = logging.getLogger("snapbooth.workers")

# Consecutive failed grabs tolerated before the camera worker gives up.
DEFAULT_MAX_CONSECUTIVE_FAILURES = 30


class BaseWorker:
    def __init__(self, name: str = ""):
        self.name = name or self.__class__.__name__
        self._stop_evt = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_error: Exception | None = None

    def start(self):
        if self._thread is not None:
            raise RuntimeError(
                f"{self.name} is single-use; start() may only be called once"
            )
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop_evt.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                L.warning("%s worker thread did not exit cleanly", self.name)

    def _run(self):
        try:
            self.run()
        except Exception as e:
            self._last_error = e
            L.exception("%s worker error", self.name)

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def has_started(self) -> bool:
        return self._thread is not None

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    def run(self):
        raise NotImplementedError


class FrameQueue:
    """Bounded hand-off between camera and frame workers; keeps the newest frames."""

    def __init__(self, maxsize: int = 2):
        self.queue: queue.Queue[CaptureResult] = queue.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def put(self, item: CaptureResult):
        try:
            self.queue.put_nowait(item)
            return
        except queue.Full:
            try:
                stale = self.queue.get_nowait()
            except queue.Empty:
                stale = None
            if stale is not None:
                self.dropped += 1
                L.debug(
                    "Frame queue full: drop_oldest frame=%s qsize=%d/%d",
                    stale.trigger_seq,
                    self.queue.qsize(),
                    self.queue.maxsize,
                )
                self.queue.task_done()
            try:
                self.queue.put_nowait(item)
            except queue.Full:
                # A concurrent producer/consumer race can still leave the queue full.
                self.dropped += 1
                L.debug("Frame queue full: drop_incoming frame=%s", item.trigger_seq)

    def clear(self) -> int:
        return drain_queue_nowait(self.queue)


class CameraWorker(BaseWorker):
    def __init__(
        self,
        camera,
        frames: FrameQueue,
        *,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
    ):
        super().__init__("CameraWorker")
        self.camera = camera
        self.frames = frames
        self.max_consecutive_failures = max(1, int(max_consecutive_failures))

    def run(self):
        seq = 0
        failures = 0
        device_id = str(self.camera.cfg.device_index)
        while not self._stop_evt.is_set():
            seq += 1
            try:
                res = self.camera.capture_once(seq, triggered_at=datetime.now(timezone.utc))
            except Exception as e:
                raise RuntimeError(
                    _worker_stage_context(
                        worker="CameraWorker", stage="capture", frame_id=seq, device_id=device_id
                    )
                ) from e
            if not res.success or res.image is None:
                failures += 1
                L.warning(
                    "[%5s] dev=%s camera_error=%s (%d/%d)",
                    seq,
                    res.device_id or device_id,
                    res.error or "capture_failed",
                    failures,
                    self.max_consecutive_failures,
                )
                if failures >= self.max_consecutive_failures:
                    raise RuntimeError(
                        _worker_stage_context(
                            worker="CameraWorker",
                            stage="capture",
                            frame_id=seq,
                            device_id=device_id,
                            detail=f"{failures} consecutive failures",
                        )
                    )
                # Back off briefly so a dead device does not spin the CPU.
                self._stop_evt.wait(0.05)
                continue
            failures = 0
            self.frames.put(res)


class FrameWorker(BaseWorker):
    """Segments each frame and runs it through the booth pipeline, one at a time."""

    def __init__(
        self,
        frames: FrameQueue,
        segmenter,
        pipeline,
        frame_sink: Callable[[int, np.ndarray], None],
    ):
        super().__init__("FrameWorker")
        self.frames = frames
        self.segmenter = segmenter
        self.pipeline = pipeline
        self.frame_sink = frame_sink
        self.processed = 0

    def run(self):
        q = self.frames.queue
        while not self._stop_evt.is_set():
            try:
                res = q.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._process(res)
            finally:
                q.task_done()

    def _process(self, res: CaptureResult):
        seq = int(res.trigger_seq or 0)
        seg_t0 = time.perf_counter()
        try:
            mask = self.segmenter.segment(res.image)
        except Exception as e:
            raise RuntimeError(
                _worker_stage_context(
                    worker="FrameWorker", stage="segment", frame_id=seq, device_id=res.device_id
                )
            ) from e
        segmented = SegmentedFrame(
            frame_seq=seq,
            image=res.image,
            mask=mask,
            captured_at=res.captured_at,
            timings={"segment_ms": (time.perf_counter() - seg_t0) * 1000},
        )
        try:
            result = self.pipeline.process_frame(segmented.image, segmented.mask)
        except Exception as e:
            raise RuntimeError(
                _worker_stage_context(
                    worker="FrameWorker", stage="process", frame_id=seq, device_id=res.device_id
                )
            ) from e
        try:
            self.frame_sink(seq, result.composite.image)
        except Exception as e:
            raise RuntimeError(
                _worker_stage_context(
                    worker="FrameWorker", stage="publish", frame_id=seq, device_id=res.device_id
                )
            ) from e
        self.processed += 1
        if result.countdown_started:
            L.info(
                "[%5s] subject still at %.2fm; countdown started",
                seq,
                result.distance.smoothed,
            )
        L.debug(
            "[%5s] segment=%.2fms process=%.2fms dist=%.2fm in_range=%s motion=%.4f still=%.0f%%",
            seq,
            segmented.timings["segment_ms"],
            result.process_ms,
            result.distance.smoothed,
            result.distance.in_range,
            result.motion.ratio,
            result.stillness.progress * 100,
        )


class CommandWorker(BaseWorker):
    """Applies queued operator commands to the pipeline from a single thread."""

    def __init__(self, trigger_queue: queue.Queue, pipeline):
        super().__init__("CommandWorker")
        self.trigger_queue = trigger_queue
        self.pipeline = pipeline

    def run(self):
        while not self._stop_evt.is_set():
            try:
                event = self.trigger_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.dispatch(event)
            finally:
                self.trigger_queue.task_done()

    def dispatch(self, event: TriggerEvent) -> Optional[object]:
        cmd = event.command
        src = event.source
        p = self.pipeline
        if cmd == CMD_AUTO:
            out = p.trigger_auto(src)
        elif cmd == CMD_MANUAL:
            out = p.trigger_manual(src)
        elif cmd == CMD_CAPTURE:
            out = p.capture(src)
        elif cmd == CMD_NEXT_BG:
            out = p.next_background()
        elif cmd == CMD_PREV_BG:
            out = p.previous_background()
        elif cmd == CMD_SET_BG:
            out = p.set_background(str(event.payload))
        else:
            L.warning("[%5s] unknown command %r from %s", event.trigger_seq, cmd, src)
            return None
        L.info("[%5s] src=%s cmd=%s -> %s", event.trigger_seq, src, cmd, out)
        return out


def _worker_stage_context(
    *,
    worker: str,
    stage: str,
    frame_id: int,
    device_id: str,
    detail: str | None = None,
) -> str:
    parts = [
        f"{worker} stage={stage}",
        f"frame_id={frame_id}",
        f"device_id={device_id}",
    ]
    if detail:
        parts.append(detail)
    return " ".join(parts)


__all__ = [
    "BaseWorker",
    "CameraWorker",
    "CommandWorker",
    "FrameQueue",
    "FrameWorker",
]
