# -- coding: utf-8 --
"""OutputManager: keep capture history and the live preview, fan out to channels."""

import logging
import os
import queue
import threading
import time
from collections import deque
from datetime import datetime
from typing import Protocol

import numpy as np

from core.contracts import CaptureRecord
from utils.image import encode_image_jpeg
from utils.path_time import coerce_utc_datetime

L = logging.getLogger("snapbooth.output")


class OutputChannel(Protocol):
    def start(self): ...
    def stop(self): ...
    def publish(self, rec: CaptureRecord): ...
    def publish_heartbeat(self, ts: float | None = None): ...
    def raise_if_failed(self): ...


class ResultStore:
    _STOP_SENTINEL = None

    def __init__(
        self,
        base_dir: str,
        max_records: int = 10,
        write_csv: bool = True,
        preview_quality: int = 80,
    ):
        self.base_dir = base_dir
        self.csv_root_dir = base_dir
        self._max_records = max_records
        self._preview_quality = int(preview_quality)
        self._records: deque[CaptureRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()
        self._latest_frame: np.ndarray | None = None
        self._latest_frame_seq = 0
        self._preview_cache: tuple[int, bytes, str] | None = None
        self.total_count = 0
        self.ok_count = 0
        self.error_count = 0
        self._write_queue: queue.Queue[CaptureRecord | None] | None = (
            queue.Queue() if write_csv else None
        )
        self._writer_thread = (
            threading.Thread(target=self._writer_loop, daemon=True)
            if write_csv
            else None
        )
        if write_csv:
            os.makedirs(self.csv_root_dir, exist_ok=True)
        if self._writer_thread:
            self._writer_thread.start()

    def stop(self):
        thread = self._writer_thread
        q = self._write_queue
        if thread is None or q is None:
            return
        q.put(self._STOP_SENTINEL)
        thread.join()
        self._writer_thread = None
        self._write_queue = None

    def submit(self, rec: CaptureRecord):
        with self._lock:
            self._records.appendleft(rec)
            self.total_count += 1
            if rec.result == "OK":
                self.ok_count += 1
            else:
                self.error_count += 1
        if self._write_queue is not None:
            self._write_queue.put(rec)

    def set_latest_frame(self, seq: int, image: np.ndarray):
        with self._lock:
            self._latest_frame = image
            self._latest_frame_seq = int(seq)

    def latest_frame(self) -> tuple[int, np.ndarray] | None:
        with self._lock:
            if self._latest_frame is None:
                return None
            return self._latest_frame_seq, self._latest_frame

    def latest_preview(self) -> tuple[bytes, str] | None:
        """JPEG of the newest composite, encoded on demand and cached per frame."""
        with self._lock:
            image = self._latest_frame
            seq = self._latest_frame_seq
            cached = self._preview_cache
        if image is None:
            return None
        if cached is not None and cached[0] == seq:
            return cached[1], cached[2]
        data, mime = encode_image_jpeg(image, quality=self._preview_quality, subsampling=1)
        with self._lock:
            self._preview_cache = (seq, data, mime)
        return data, mime

    def reset(self):
        with self._lock:
            self._records.clear()
            self._latest_frame = None
            self._latest_frame_seq = 0
            self._preview_cache = None
            self.total_count = 0
            self.ok_count = 0
            self.error_count = 0

    @property
    def latest_records(self) -> list[CaptureRecord]:
        with self._lock:
            return list(self._records)

    @property
    def max_records(self) -> int:
        return self._max_records

    def stats(self):
        with self._lock:
            total = self.total_count
            ok = self.ok_count
            err = self.error_count
        return {
            "total": total,
            "ok": ok,
            "error": err,
            "success_rate": (ok / total) if total else 0.0,
        }

    def _writer_loop(self):
        queue_ref = self._write_queue
        if queue_ref is None:
            raise RuntimeError("writer queue missing")
        while True:
            item = queue_ref.get()
            try:
                if item is None:
                    break
                try:
                    self._append_csv(item)
                except OSError:
                    L.exception("CSV append failed seq=%s", item.capture_seq)
            finally:
                queue_ref.task_done()

    def _append_csv(self, rec: CaptureRecord):
        csv_path = self._csv_path_for_record(rec)
        write_header = not os.path.exists(csv_path)
        t_date, t_time = _fmt_date_time(rec.triggered_at)
        save_time = _fmt_time(rec.exported_at)
        path = os.path.basename(rec.path) if rec.path else ""
        remark = str(rec.remark or "").replace(",", ";")
        with open(csv_path, "a", encoding="utf-8") as f:
            if write_header:
                f.write(
                    "id,trigger_date,trigger_time,save_finish_time,source,mode,result,file,duration_ms,remark\n"
                )
            f.write(
                f"{rec.capture_seq},{t_date},{t_time},{save_time},{rec.source},{rec.mode},{rec.result},{path},{(rec.duration_ms or 0.0):.3f},{remark}\n"
            )

    def _csv_path_for_record(self, rec: CaptureRecord) -> str:
        date_key = coerce_utc_datetime(rec.triggered_at or rec.exported_at).date().isoformat()
        day_dir = os.path.join(self.csv_root_dir, date_key)
        os.makedirs(day_dir, exist_ok=True)
        return os.path.join(day_dir, "records.csv")


def _fmt_date_time(dt: datetime | None) -> tuple[str, str]:
    ref = coerce_utc_datetime(dt)
    return ref.date().isoformat(), ref.strftime("%H:%M:%S.%f")[:-3] + "Z"


def _fmt_time(dt: datetime | None) -> str:
    return coerce_utc_datetime(dt).strftime("%H:%M:%S.%f")[:-3] + "Z"


class OutputManager:
    """Front door for capture records and composites.

    Records go to the store (history, stats, CSV) and then to every channel;
    composites only update the store's latest frame, which pull-style channels
    (HMI preview, local window) read when they need it.
    """

    def __init__(self, store: ResultStore):
        self._store = store
        self._channels: list[OutputChannel] = []
        self._heartbeat_seq: int = 0

    def publish(self, rec: CaptureRecord):
        self._store.submit(rec)
        for ch in self._channels:
            ch.publish(rec)

    def publish_frame(self, seq: int, image: np.ndarray):
        self._store.set_latest_frame(seq, image)

    def add_channel(self, channel: OutputChannel):
        self._channels.append(channel)

    def start(self):
        for ch in self._channels:
            ch.start()

    def stop(self):
        for ch in self._channels:
            try:
                ch.stop()
            except Exception:
                L.exception("Output channel stop failed: %r", ch)
        self._store.stop()

    def raise_if_failed(self):
        for ch in self._channels:
            ch.raise_if_failed()

    def reset(self):
        self._store.reset()

    def tick(self):
        ts = time.time()
        self._heartbeat_seq += 1
        for ch in self._channels:
            ch.publish_heartbeat(ts)

    # ---- Read API for HMI (proxy to internal store) ----
    @property
    def latest_records(self):
        return self._store.latest_records

    @property
    def max_records(self) -> int:
        return self._store.max_records

    def latest_frame(self):
        return self._store.latest_frame()

    def latest_preview(self):
        return self._store.latest_preview()

    def stats(self):
        return self._store.stats()

    def heartbeat_seq(self) -> int | None:
        return self._heartbeat_seq or None


__all__ = ["ResultStore", "OutputManager", "OutputChannel"]
