"""Still-image export sink: writes the untouched original frame to dated folders."""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime

import cv2
import numpy as np

from utils.image import write_image
from utils.path_time import DailyPhotoDirCache, build_photo_path

L = logging.getLogger("snapbooth.export")

_SUPPORTED_EXTS = {".png", ".jpg", ".jpeg", ".bmp"}


class ExportError(Exception):
    pass


class ImageExportSink:
    def __init__(self, root_dir: str, ext: str = ".png"):
        raw = str(ext or ".png").strip().lower()
        self.ext = raw if raw.startswith(".") else f".{raw}"
        if self.ext not in _SUPPORTED_EXTS:
            raise ValueError(f"export ext must be one of {sorted(_SUPPORTED_EXTS)}")
        self.root_dir = root_dir
        self._dir_cache = DailyPhotoDirCache()
        self._lock = threading.Lock()

    def export(
        self,
        image: np.ndarray,
        seq: int,
        *,
        source: str = "",
        ts: datetime | None = None,
    ) -> str:
        if image is None or getattr(image, "size", 0) == 0:
            raise ExportError("nothing to export")
        t0 = time.perf_counter()
        try:
            with self._lock:
                path, _ = build_photo_path(
                    self.root_dir, seq, self.ext, ts_utc=ts, cache=self._dir_cache
                )
            nbytes = write_image(path, image)
        except (OSError, RuntimeError, ValueError, cv2.error) as e:
            raise ExportError(f"write failed: {e}") from e
        L.info(
            "[%5s] exported src=%s %s (%d bytes, %.1fms)",
            seq,
            source,
            path,
            nbytes,
            (time.perf_counter() - t0) * 1000,
        )
        return path


def build_export_sink_from_loaded_config(cfg) -> ImageExportSink | None:
    block = cfg.output.export
    if not block.enabled:
        return None
    root = os.path.join(cfg.runtime.save_dir, str(block.subdir or "photos"))
    return ImageExportSink(root, ext=str(block.ext))


__all__ = ["ExportError", "ImageExportSink", "build_export_sink_from_loaded_config"]
